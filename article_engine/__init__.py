"""
Article Engine

Checkpointed, resumable orchestration of multi-phase article generation jobs:
phase state machine, checkpoint/resume, retry with error classification,
duplicate-submission guard and semantic link insertion.

Usage:
    from article_engine.orchestrator import JobSubmission, get_orchestrator

    orchestrator = get_orchestrator()
    result = await orchestrator.execute(JobSubmission(scope="site-1", subject="Best Coffee Makers"))
"""

__version__ = "1.0.0"
