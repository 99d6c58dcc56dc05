#!/usr/bin/env python3
"""Runs sample descriptions through retrieval and semantic filtering and reports counts and latency."""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
import statistics
import sys
import time

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from dotenv import load_dotenv
from media_tag_assistant.models import MediaType
from media_tag_assistant.service import SearchService


DEFAULT_QUERIES = [
    ("GALGAME", "I like redemption stories, the heroine should be a student"),
    ("GALGAME", "a time loop mystery set in a small seaside town"),
    ("ANIME", "slow paced slice of life about camping with friends"),
    ("ANIME", "dark fantasy with a revenge plot and a morally grey lead"),
    ("MANGA", "sports story about an underdog volleyball team"),
    ("MANGA", "romantic comedy where the leads are rivals at school"),
]


async def evaluate(service: SearchService, queries: list[tuple[str, str]], *, semantic: bool) -> dict:
    results = []
    retrieval_latency = []
    filter_latency = []

    for media_name, text in queries:
        media_type = MediaType(media_name)
        context = service.new_context()

        start = time.perf_counter()
        report = await service.retrieve(text, media_type, context)
        retrieval_ms = (time.perf_counter() - start) * 1000.0
        retrieval_latency.append(retrieval_ms)

        ranked = []
        filter_ms = 0.0
        if semantic:
            start = time.perf_counter()
            ranked = await service.semantic_filter.filter_items(report.items, text, context)
            filter_ms = (time.perf_counter() - start) * 1000.0
            filter_latency.append(filter_ms)

        results.append(
            {
                "type": media_name,
                "query": text,
                "ai_tags": report.ai_tags,
                "tag_ids": report.tag_ids,
                "candidates": len(report.items),
                "degraded": report.degraded_stages,
                "retrieval_latency_ms": round(retrieval_ms, 2),
                "filter_latency_ms": round(filter_ms, 2),
                "kept": len(ranked),
                "top": [f"{row.item.title} ({row.similarity:.2f})" for row in ranked[:3]],
            }
        )

    summary = {
        "queries": len(queries),
        "retrieval_latency_ms_avg": round(statistics.mean(retrieval_latency), 2) if retrieval_latency else 0.0,
        "filter_latency_ms_avg": round(statistics.mean(filter_latency), 2) if filter_latency else 0.0,
        "candidates_avg": round(statistics.mean(row["candidates"] for row in results), 2) if results else 0.0,
        "degraded_queries": sum(1 for row in results if row["degraded"]),
    }
    return {"summary": summary, "results": results}


async def run(queries: list[tuple[str, str]], *, semantic: bool) -> dict:
    service = SearchService()
    try:
        await service.load_vocabulary()
        return await evaluate(service, queries, semantic=semantic)
    finally:
        await service.aclose()


def _parse_query(raw: str) -> tuple[str, str]:
    media_name, sep, text = raw.partition(":")
    if not sep or media_name.strip().upper() not in MediaType.__members__:
        raise argparse.ArgumentTypeError("queries look like TYPE:description, e.g. ANIME:space opera")
    return media_name.strip().upper(), text.strip()


def main() -> int:
    load_dotenv(ROOT_DIR / ".env")

    parser = argparse.ArgumentParser(description="Evaluate tag retrieval and semantic filtering on sample queries.")
    parser.add_argument(
        "--query",
        action="append",
        type=_parse_query,
        default=[],
        help="Custom TYPE:description query (can be passed multiple times).",
    )
    parser.add_argument("--no-semantic", action="store_true", help="Skip the similarity filtering pass.")
    parser.add_argument(
        "--output",
        type=Path,
        default=ROOT_DIR / "docs" / "eval_last_run.json",
        help="Where to write JSON evaluation results.",
    )
    args = parser.parse_args()

    queries = args.query if args.query else DEFAULT_QUERIES
    payload = asyncio.run(run(queries, semantic=not args.no_semantic))
    args.output.parent.mkdir(parents=True, exist_ok=True)
    args.output.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")

    summary = payload["summary"]
    print("Pipeline Evaluation")
    print(f"queries: {summary['queries']}")
    print(f"retrieval latency avg: {summary['retrieval_latency_ms_avg']} ms")
    print(f"filter latency avg: {summary['filter_latency_ms_avg']} ms")
    print(f"candidates avg: {summary['candidates_avg']}")
    print(f"degraded queries: {summary['degraded_queries']}")
    print(f"saved: {args.output}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
