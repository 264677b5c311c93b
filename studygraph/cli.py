"""
studygraph command line: build a knowledge graph from a file or a text
snippet and write the result as JSON.

    studygraph --file notes.pdf --output graph.json
    studygraph --text "Newton's first law states..." --verbose
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional, Sequence

import structlog

from studygraph.application.services.knowledge_graph_pipeline import KnowledgeGraphPipeline, PipelineRun
from studygraph.domain.documents import DocumentSource
from studygraph.domain.exceptions import GenerationError
from studygraph.domain.progress import CallbackProgressSink, ProgressEvent
from studygraph.infrastructure.ai.llm_proxy_client import LLMProxyClient
from studygraph.infrastructure.observability.logger_config import configure_structlog

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="studygraph",
        description="Generate a knowledge graph of concepts and prerequisites from study material.",
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--file", type=Path, help="pdf, txt, md, doc or docx file")
    source.add_argument("--text", help="raw text (at least 80 characters)")
    parser.add_argument("--output", type=Path, help="write the graph JSON here instead of stdout")
    parser.add_argument("--verbose", action="store_true", help="emit structured logs to stderr")
    return parser


def _print_progress(event: ProgressEvent) -> None:
    detail = f" ({event.detail})" if event.detail else ""
    print(f"[{event.current}/{event.total}] {event.step}{detail}", file=sys.stderr)


def load_document(args: argparse.Namespace) -> DocumentSource:
    if args.file is not None:
        return DocumentSource.from_file(args.file.name, args.file.read_bytes())
    return DocumentSource.from_text(args.text)


async def _generate(document: DocumentSource) -> PipelineRun:
    client = LLMProxyClient()
    try:
        pipeline = KnowledgeGraphPipeline(client)
        return await pipeline.run(document, progress=CallbackProgressSink(_print_progress))
    finally:
        await client.aclose()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_structlog("DEBUG" if args.verbose else "WARNING", json_output=not args.verbose)

    try:
        document = load_document(args)
        run = asyncio.run(_generate(document))
    except OSError as exc:
        print(f"Could not read input: {exc}", file=sys.stderr)
        return 2
    except GenerationError as exc:
        logger.debug("cli_generation_failed", error_type=type(exc).__name__)
        print(exc.user_message, file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Generation cancelled", file=sys.stderr)
        return 130

    payload = json.dumps(run.result.to_payload(), ensure_ascii=False, indent=2)
    if args.output is not None:
        args.output.write_text(payload + "\n", encoding="utf-8")
        print(f"Wrote {len(run.result.concepts)} concepts to {args.output}", file=sys.stderr)
    else:
        print(payload)
    if run.chapter_failures:
        print(f"{len(run.chapter_failures)} chapter(s) could not be processed", file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())
