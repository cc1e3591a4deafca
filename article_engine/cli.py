"""
Command-line interface — Article Engine
=======================================

    article-engine run --scope site-1 --subject "Best Coffee Makers"
    article-engine status --job-id <id>
    article-engine clear --job-id <id>
    article-engine cleanup --days 30
    article-engine check --scope site-1 --subject "best coffee-makers"
    article-engine link --html article.html --links links.json [--output out.html]
    article-engine phases

Global flags: ``--config PATH`` (engine JSON config), ``--verbose/-v``.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from article_engine.checkpoint_manager import (
    CheckpointManager,
    JsonCheckpointStore,
    cleanup_old_checkpoints,
)
from article_engine.config import EngineConfig, load_config, set_log_level
from article_engine.duplicate_guard import DuplicateGuard, JsonSubmissionStore
from article_engine.job_state import PHASE_CRITICALITY, TargetConfig, WORK_PHASES
from article_engine.link_engine import (
    EXTERNAL,
    LinkCandidate,
    LinkEngineConfig,
    LinkInsertionEngine,
)
from article_engine.orchestrator import (
    DuplicateJobError,
    JobFailedError,
    JobResult,
    JobSubmission,
    Orchestrator,
)
from article_engine.step_workers import build_http_workers


def _truncate(text: str, max_len: int = 80) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def _format_result(result: JobResult) -> str:
    lines = [
        f"Job ID:    {result.job_id}",
        f"Scope:     {result.scope}",
        f"Subject:   {result.subject_key}",
        f"Title:     {result.title}",
        f"Slug:      {result.slug}",
        f"Work ID:   {result.work_id or '(not persisted)'}",
    ]
    if result.from_duplicate:
        lines.append("Source:    existing completed work (duplicate)")
    if result.resumed_from:
        lines.append(f"Resumed:   from {result.resumed_from}")
    total = result.execution_stats.get("total_seconds")
    if total is not None:
        lines.append(f"Duration:  {total:.1f}s")
    if result.warnings:
        lines.append("")
        lines.append("Warnings:")
        for warning in result.warnings:
            lines.append(f"  [{warning.get('phase')}] {_truncate(warning.get('message', ''))}")
    return "\n".join(lines)


def _format_state_summary(summary: Dict[str, Any]) -> str:
    lines = [
        f"Job ID:    {summary['job_id']}",
        f"Scope:     {summary['scope']}",
        f"Subject:   {summary['subject_key']}",
        f"Phase:     {summary['current_phase'].upper()}",
        f"Next:      {summary['next_phase'] or '-'}",
        f"Warnings:  {summary['warnings']}",
        f"Errors:    {summary['errors']}",
        f"Updated:   {summary['updated_at']}",
        "",
        "Phases:",
    ]
    done = set(summary["completed_phases"])
    for phase in WORK_PHASES:
        icon = "[OK]" if phase.value in done else "[  ]"
        lines.append(f"  {icon} {phase.value}")
    return "\n".join(lines)


def _load_candidates(path: Path) -> Dict[str, List[LinkCandidate]]:
    """Read ``{"internal": [...], "external": [...]}``.

    External entries without explicit anchors are treated as references
    (url, title, description, domain) and get extracted keywords.
    """
    with open(path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    internal = [LinkCandidate.from_dict(item) for item in data.get("internal", [])]
    external = []
    for item in data.get("external", []):
        if item.get("anchors") or item.get("keywords"):
            external.append(LinkCandidate.from_dict(item, kind=EXTERNAL))
        else:
            external.append(LinkCandidate.from_reference(item))
    return {"internal": internal, "external": external}


async def _run_job(orchestrator: Orchestrator, submission: JobSubmission) -> JobResult:
    try:
        return await orchestrator.execute(submission)
    finally:
        await orchestrator.close()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="article-engine",
        description="Checkpointed article generation job orchestrator",
    )
    parser.add_argument("--config", default=None, help="Path to engine JSON config")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    subparsers = parser.add_subparsers(dest="command", help="Engine commands")

    # --- run ---
    p_run = subparsers.add_parser("run", help="Submit a job using configured HTTP workers")
    p_run.add_argument("--scope", required=True, help="Tenant/site scope")
    p_run.add_argument("--subject", required=True, help="Article subject")
    p_run.add_argument("--job-id", default=None, help="Job ID (resume an existing job)")
    p_run.add_argument("--language", default="en", help="Target language")
    p_run.add_argument("--words", type=int, default=2000, help="Target word count")
    p_run.add_argument("--images", type=int, default=3, help="Number of content images")
    p_run.add_argument("--industry", default=None, help="Industry hint")
    p_run.add_argument("--region", default=None, help="Region hint")
    p_run.add_argument("--force", action="store_true", help="Bypass the duplicate guard")
    p_run.add_argument("--resume-failed", action="store_true",
                       help="Resume a job whose checkpoint is FAILED")
    p_run.add_argument("--output", default=None, help="Write the article HTML to this file")

    # --- status ---
    p_status = subparsers.add_parser("status", help="Show checkpoint status of a job")
    p_status.add_argument("--job-id", required=True, help="Job ID")
    p_status.add_argument("--json", action="store_true", help="Print raw JSON")

    # --- clear ---
    p_clear = subparsers.add_parser("clear", help="Drop the checkpoint of a job")
    p_clear.add_argument("--job-id", required=True, help="Job ID")

    # --- cleanup ---
    p_cleanup = subparsers.add_parser("cleanup", help="Remove old checkpoints")
    p_cleanup.add_argument("--days", type=int, default=None,
                           help="Age in days (default: checkpoint_retention_days)")

    # --- check ---
    p_check = subparsers.add_parser("check", help="Look up duplicates for a subject")
    p_check.add_argument("--scope", required=True, help="Tenant/site scope")
    p_check.add_argument("--subject", required=True, help="Subject to look up")

    # --- link ---
    p_link = subparsers.add_parser("link", help="Insert links into an HTML file")
    p_link.add_argument("--html", required=True, help="Input HTML file")
    p_link.add_argument("--links", required=True, help="JSON file with internal/external candidates")
    p_link.add_argument("--subject", default="", help="Primary subject phrase (never linked)")
    p_link.add_argument("--output", default=None, help="Write rewritten HTML here")

    # --- phases ---
    subparsers.add_parser("phases", help="List phases and their criticality")

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point for the article engine."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        config: EngineConfig = load_config(Path(args.config) if args.config else None)
    except (OSError, ValueError) as exc:
        print(f"Invalid configuration: {exc}")
        sys.exit(1)

    set_log_level("DEBUG" if args.verbose else config.log_level)

    # ---- run ----
    if args.command == "run":
        workers = build_http_workers(
            config.worker_endpoints,
            timeout=config.worker_timeout_seconds,
            headers=config.worker_headers,
        )
        orchestrator = Orchestrator(workers=workers, config=config)
        submission = JobSubmission(
            scope=args.scope,
            subject=args.subject,
            target_config=TargetConfig(
                language=args.language,
                target_word_count=args.words,
                image_count=args.images,
                industry=args.industry,
                region=args.region,
            ),
            force_regenerate=args.force,
            resume_failed=args.resume_failed,
        )
        if args.job_id:
            submission.job_id = args.job_id

        try:
            result = asyncio.run(_run_job(orchestrator, submission))
        except DuplicateJobError as exc:
            print(f"Duplicate: {exc} (existing job: {exc.existing_job_id})")
            sys.exit(2)
        except JobFailedError as exc:
            print(f"FAILED at phase {exc.phase}: {exc.message}")
            print(f"Partial output kept: {'yes' if exc.has_partial_output else 'no'}")
            if exc.error_summary:
                print(exc.error_summary)
            sys.exit(1)

        print(_format_result(result))
        if args.output:
            Path(args.output).write_text(result.html, encoding="utf-8")
            print(f"\nHTML written to {args.output}")

    # ---- status ----
    elif args.command == "status":
        manager = CheckpointManager(args.job_id, JsonCheckpointStore(config.checkpoint_dir))
        state = manager.load()
        record = JsonSubmissionStore(config.submissions_dir).get_job(args.job_id)
        if state is None and record is None:
            print(f"No checkpoint or job record for {args.job_id}")
            sys.exit(1)
        if args.json:
            print(json.dumps({
                "checkpoint": state.to_dict() if state else None,
                "job": record.to_dict() if record else None,
            }, indent=2, default=str))
        else:
            if state is not None:
                print(_format_state_summary(state.summary()))
            else:
                print("No checkpoint (cleared or never saved)")
            if record is not None:
                print(f"\nJob record: {record.status}"
                      + (f" (work {record.work_id})" if record.work_id else "")
                      + (f" -- {_truncate(record.error)}" if record.error else ""))

    # ---- clear ----
    elif args.command == "clear":
        manager = CheckpointManager(args.job_id, JsonCheckpointStore(config.checkpoint_dir))
        if manager.clear():
            print(f"Checkpoint cleared for {args.job_id}")
        else:
            print(f"No checkpoint removed for {args.job_id}")

    # ---- cleanup ----
    elif args.command == "cleanup":
        days = args.days if args.days is not None else config.checkpoint_retention_days
        removed = cleanup_old_checkpoints(days, JsonCheckpointStore(config.checkpoint_dir))
        print(f"Removed {removed} checkpoints older than {days} days")

    # ---- check ----
    elif args.command == "check":
        guard = DuplicateGuard(
            JsonSubmissionStore(config.submissions_dir), config.duplicate_window_days,
        )
        result = guard.check(args.scope, args.subject)
        print(f"Normalized: {result.normalized_subject}")
        print(f"Result:     {result.kind.value.upper()}")
        print(f"Message:    {result.message}")
        if result.locator:
            print(f"Locator:    {result.locator}")

    # ---- link ----
    elif args.command == "link":
        markup = Path(args.html).read_text(encoding="utf-8")
        candidates = _load_candidates(Path(args.links))
        engine = LinkInsertionEngine(LinkEngineConfig.from_dict(config.link_engine))
        outcome = engine.insert(
            markup, candidates["internal"], candidates["external"], subject_phrase=args.subject,
        )
        print(json.dumps(
            {
                "stats": outcome.stats.to_dict(),
                "inserted_links": [link.to_dict() for link in outcome.inserted_links],
            },
            indent=2,
            ensure_ascii=False,
        ))
        if args.output:
            Path(args.output).write_text(outcome.markup, encoding="utf-8")

    # ---- phases ----
    elif args.command == "phases":
        print(f"{'#':<4s}{'PHASE':<24s}CRITICALITY")
        for index, phase in enumerate(WORK_PHASES, 1):
            print(f"{index:<4d}{phase.value:<24s}{PHASE_CRITICALITY[phase].value}")


if __name__ == "__main__":
    main()
