"""CLI entrypoint for the structured annotation pipeline."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from collections.abc import Iterable
from dataclasses import replace
from types import FrameType

from dotenv import load_dotenv

from acquisition import AcquiredItem, JsonlSource, UrlFetchSource
from annotation_schema import DEFAULT_SCHEMA, AnnotationSchema, load_schema
from config import PROVIDERS, SINK_BACKENDS, PipelineConfig
from identity import IdCounter
from pipeline import PipelineCoordinator, RunSummary, Sink
from report import log_summary, write_failures_csv
from scheduler import AnnotationScheduler, Annotator

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INTERRUPTED = 130

INTERRUPT_HELP = (
    "Ctrl-C stops new annotation calls and waits CANCEL_GRACE_SECONDS for calls in flight. "
    "Calls still running after that are abandoned and their records stay unprocessed, but the "
    "process only exits once they return or hit the client timeout "
    "(OPENAI_TIMEOUT_SECONDS / CLAUDE_TIMEOUT_SECONDS). Press Ctrl-C again to abort at once."
)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line flags."""
    parser = argparse.ArgumentParser(
        description="Deduplicate, annotate and persist acquired content",
        epilog=INTERRUPT_HELP,
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--input", help="JSONL file with one {url, text} object per line")
    source.add_argument("--url", action="append", help="URL to fetch and annotate (repeatable)")
    parser.add_argument("--key-field", default="url", help="JSONL field holding the identity key")
    parser.add_argument("--text-field", default="text", help="JSONL field holding the payload")
    parser.add_argument("--schema", default=None, help="Annotation schema JSON file (default: built-in publication schema)")
    parser.add_argument("--provider", choices=PROVIDERS, default=None, help="Annotation service provider")
    parser.add_argument("--concurrency", type=int, default=None, help="Maximum annotation calls in flight")
    parser.add_argument("--max-attempts", type=int, default=None, help="Attempts per record before giving up")
    parser.add_argument("--limit", type=int, default=None, help="Maximum number of records to annotate")
    parser.add_argument("--sink", choices=SINK_BACKENDS, default=None, help="Persistence backend")
    parser.add_argument("--sqlite-path", default=None, help="SQLite database path for the sqlite sink")
    parser.add_argument("--report", default=None, help="Where to write the failures CSV")
    parser.add_argument(
        "--reset-failed",
        action="store_true",
        help="Retry records a previous run persisted as failed",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only report what would be annotated, without API calls or writes",
    )
    return parser.parse_args(argv)


def apply_overrides(config: PipelineConfig, args: argparse.Namespace) -> PipelineConfig:
    """CLI flags win over environment settings."""
    overrides = {
        "provider": args.provider,
        "concurrency": args.concurrency,
        "max_attempts": args.max_attempts,
        "sink_backend": args.sink,
        "sqlite_path": args.sqlite_path,
        "schema_path": args.schema,
        "failures_report_path": args.report,
    }
    return replace(config, **{k: v for k, v in overrides.items() if v is not None})


def build_source(args: argparse.Namespace) -> Iterable[AcquiredItem]:
    if args.input:
        return JsonlSource(args.input, key_field=args.key_field, text_field=args.text_field)
    return UrlFetchSource(args.url)


def build_schema(config: PipelineConfig) -> AnnotationSchema:
    return load_schema(config.schema_path) if config.schema_path else DEFAULT_SCHEMA


def build_annotator(config: PipelineConfig) -> Annotator:
    if config.provider == "anthropic":
        from anthropic_client import AnthropicAnnotator  # noqa: PLC0415

        return AnthropicAnnotator()
    from llm_client import OpenAIAnnotator  # noqa: PLC0415

    return OpenAIAnnotator()


def build_sink(config: PipelineConfig) -> Sink:
    if config.sink_backend == "rest":
        from rest_sink import RestSink  # noqa: PLC0415

        return RestSink()
    from sqlite_sink import SqliteSink  # noqa: PLC0415

    return SqliteSink(config.sqlite_path)


def _dry_run_annotator(prompt_context: str, payload: str, schema: AnnotationSchema) -> str:
    raise RuntimeError("annotator must not be called during a dry run")


def run(config: PipelineConfig, args: argparse.Namespace) -> RunSummary:
    """Wire the collaborators together and execute one run."""
    schema = build_schema(config)
    annotator = _dry_run_annotator if args.dry_run else build_annotator(config)
    sink = build_sink(config)

    scheduler = AnnotationScheduler(
        annotator=annotator,
        schema=schema,
        policy=config.retry_policy(),
        concurrency=config.concurrency,
        prompt_context=config.prompt_context,
        grace_period=config.cancel_grace_seconds,
    )
    coordinator = PipelineCoordinator(
        sink=sink,
        scheduler=scheduler,
        counter=IdCounter(prefix=config.id_prefix),
        sink_policy=config.sink_retry_policy(),
        sink_failure_limit=config.sink_failure_limit,
        reset_failed=args.reset_failed,
        limit=args.limit,
        dry_run=args.dry_run,
    )

    def _on_sigint(signum: int, frame: FrameType | None) -> None:
        logging.warning("Interrupt received; finishing in-flight work (press Ctrl-C again to abort)")
        signal.signal(signal.SIGINT, signal.default_int_handler)
        coordinator.cancel()

    previous = signal.signal(signal.SIGINT, _on_sigint)
    try:
        summary = coordinator.run(build_source(args))
    finally:
        signal.signal(signal.SIGINT, previous)
        close = getattr(sink, "close", None)
        if callable(close):
            close()

    log_summary(summary)
    if not args.dry_run:
        write_failures_csv(summary, config.failures_report_path)
    return summary


def main(argv: list[str] | None = None) -> int:
    """Initialize config and execute the pipeline."""
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    args = parse_args(argv)
    config = apply_overrides(PipelineConfig.from_env(), args)

    summary = run(config, args)
    if summary.ok:
        return EXIT_OK
    if summary.cancelled:
        return EXIT_INTERRUPTED
    return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
