"""Downloads a small raw sample of VNDB entries for inspecting the upstream record shape."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
from pathlib import Path
import sys

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from dotenv import load_dotenv
from media_tag_assistant.catalogs import VndbClient


SAMPLE_FIELDS = "id,title,alttitle,description,tags.name"


async def fetch_sample(results: int, base_url: str) -> list[dict]:
    client = VndbClient(base_url=base_url)
    try:
        return await client.query_vn(filters=[], fields=SAMPLE_FIELDS, sort="id", reverse=False, results=results)
    finally:
        await client.aclose()


def main() -> None:
    load_dotenv(ROOT_DIR / ".env")

    parser = argparse.ArgumentParser()
    parser.add_argument("--results", type=int, default=10, help="Number of entries to fetch (VNDB caps this at 100).")
    parser.add_argument(
        "--output",
        default=str(ROOT_DIR / "vns_raw.json"),
        help="Where to write the raw JSON sample.",
    )
    args = parser.parse_args()

    base_url = os.getenv("MTA_VNDB_API_URL", "").strip() or "https://api.vndb.org/kana"
    print("Fetching VN data from VNDB...")
    rows = asyncio.run(fetch_sample(max(1, min(args.results, 100)), base_url))

    output = Path(os.path.expanduser(args.output)).resolve()
    output.write_text(json.dumps(rows, indent=2, ensure_ascii=False), encoding="utf-8")
    print(f"Saved {len(rows)} VNs to {output}")


if __name__ == "__main__":
    main()
