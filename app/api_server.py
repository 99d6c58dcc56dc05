"""FastAPI entrypoint exposing the media tag search APIs and the static web page."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import aclosing, asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

import sys

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from dotenv import load_dotenv

from media_tag_assistant.context import RequestCancelled
from media_tag_assistant.models import MediaType
from media_tag_assistant.service import SearchService

load_dotenv()
logging.basicConfig(
    level=os.getenv("MTA_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
_LOGGER = logging.getLogger("media_tag_assistant.api")


class SearchRequest(BaseModel):
    text: str = ""
    type: MediaType


class RoughSearchRequest(SearchRequest):
    semantic: bool = False


WEB_DIR = Path(__file__).resolve().parent / "web"

service = SearchService()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    vocabulary_task = asyncio.create_task(service.load_vocabulary())
    try:
        yield
    finally:
        if not vocabulary_task.done():
            vocabulary_task.cancel()
        await service.aclose()


app = FastAPI(title="Media Tag Assistant", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5500",
        "http://localhost:3000",
        "http://localhost:5500",
    ],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type"],
)
if WEB_DIR.is_dir():
    app.mount("/static", StaticFiles(directory=str(WEB_DIR)), name="static")


def _error_response(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": "Internal server error", "details": str(exc) or type(exc).__name__},
    )


@app.get("/", response_model=None)
def home_page() -> FileResponse | dict:
    index_path = WEB_DIR / "index.html"
    if index_path.is_file():
        return FileResponse(str(index_path))
    return {"app": "media-tag-assistant", "endpoints": ["/search", "/search-stream", "/api/health"]}


@app.get("/api/health")
def health() -> dict:
    vocabulary = service.vocabulary.value
    return {
        "status": "ok",
        "app": "media-tag-assistant",
        "apiKeyLoaded": service.api_key_loaded,
        "vocabulary": {"tags": len(vocabulary.tags), "genres": len(vocabulary.genres)},
    }


@app.post("/search", response_model=None)
async def search(request: RoughSearchRequest) -> dict | JSONResponse:
    _LOGGER.info("/search called: type=%s semantic=%s", request.type.value, request.semantic)
    try:
        return await service.search(request.text, request.type, semantic=request.semantic)
    except RequestCancelled as exc:
        _LOGGER.warning("/search stopped: %s", exc)
        return _error_response(504, exc)
    except Exception as exc:
        _LOGGER.exception("/search failed")
        return _error_response(500, exc)


@app.post("/search-stream")
async def search_stream(request: SearchRequest) -> StreamingResponse:
    _LOGGER.info("/search-stream called: type=%s", request.type.value)
    context = service.new_context()

    async def ndjson() -> AsyncIterator[str]:
        completed = False
        try:
            async with aclosing(service.search_stream(request.text, request.type, context)) as records:
                async for record in records:
                    yield json.dumps(record, ensure_ascii=False) + "\n"
            completed = True
        finally:
            if not completed:
                context.cancel("Client disconnected.")
                _LOGGER.info("/search-stream aborted before completion")

    return StreamingResponse(ndjson(), media_type="application/x-ndjson")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=int(os.getenv("PORT", "3000")))
