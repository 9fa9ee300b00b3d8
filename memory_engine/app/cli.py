from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import replace
from typing import List

from memory_engine.app.settings import AppSettings
from memory_engine.app.wiring import EngineBundle, build_bundle
from memory_engine.domain.errors import MemoryEngineError
from memory_engine.domain.memory_models import CandidateMemory, MemoryCategory, MemoryHit
from memory_engine.domain.rag_models import ChunkHit
from memory_engine.use_cases.extractor import EXPLICIT_TAGS
from memory_engine.use_cases.vector_gateway import MemoryScope, format_bytes


async def _ingest(b: EngineBundle, args, api_key: str) -> None:
    for p in args.paths:
        try:
            doc = await b.ingestor.ingest_path(args.uid, p, tags=args.tag, api_key=api_key)
        except MemoryEngineError as e:
            print(f"{p}: failed ({type(e).__name__}: {e})")
            continue
        chunks = await b.store.list_chunks(args.uid, doc.id)
        print(f"{p}: {doc.status.value} id={doc.id} chunks={len(chunks)} pages={doc.page_count} lang={doc.language}")


async def _memories(b: EngineBundle, args, api_key: str) -> None:
    items = await b.memories.list(args.uid, limit=args.limit, memory_type=args.type)
    if not items:
        print("(memory empty)")
        return
    for m in items:
        print(f"  {m.id} | [{m.metadata.category.value}] {m.content} (imp={m.importance:.2f}, seen={m.access_count})")
    s = await b.memories.stats(args.uid)
    print(f"total={s.total} auto={s.auto} explicit={s.explicit} avg_importance={s.avg_importance:.2f}")


async def _remember(b: EngineBundle, args, api_key: str) -> None:
    text = " ".join(args.text)
    content = b.extractor.detect_explicit(text) or text
    candidate = CandidateMemory(
        content=content,
        importance=b.extractor.explicit_importance,
        category=MemoryCategory.parse(args.category),
        tags=list(EXPLICIT_TAGS),
        context=f'User explicitly requested to remember: "{content}"',
    )
    m = await b.orchestrator.remember(args.uid, candidate, api_key)
    print("skipped: duplicate" if m is None else f"saved {m.id} (importance={m.importance:.2f})")


async def _search(b: EngineBundle, args, api_key: str) -> None:
    query = " ".join(args.query)
    if args.docs:
        hits: List = await b.orchestrator.search_documents_text(query, args.uid, api_key, max_results=args.limit)
    else:
        hits = await b.gateway.search_text(query, args.uid, api_key, max_results=args.limit, scope=MemoryScope())
    if not hits:
        print("(no results)")
    for h in hits:
        if isinstance(h, ChunkHit):
            print(f"  {h.similarity:.3f} | {h.document_name}#{h.chunk.index} p={h.chunk.page_number} | {h.chunk.content[:120]}")
        elif isinstance(h, MemoryHit):
            print(f"  {h.similarity:.3f} | {h.memory.id} | {h.memory.content}")


async def _forget(b: EngineBundle, args, api_key: str) -> None:
    if args.all:
        print(f"removed: {await b.memories.delete_all(args.uid)}")
    elif args.document:
        print(f"chunks removed: {await b.ingestor.delete_document(args.uid, args.document)}")
    elif args.id:
        await b.memories.delete(args.uid, args.id)
        print("ok")
    else:
        print("nothing to forget: pass a memory id, --document or --all")


async def _usage(b: EngineBundle, args, api_key: str) -> None:
    u = await b.gateway.storage_usage(args.uid)
    print(json.dumps({
        "documents": u.document_count,
        "chunks": u.chunk_count,
        "used": format_bytes(u.total_bytes),
        "remaining": format_bytes(b.gateway.remaining_storage(u.total_bytes)),
        "percent": round(b.gateway.storage_percentage(u.total_bytes), 2),
    }, indent=2))


_COMMANDS = {
    "ingest": _ingest,
    "memories": _memories,
    "remember": _remember,
    "search": _search,
    "forget": _forget,
    "usage": _usage,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="memory-engine")
    parser.add_argument("--uid", default="default")
    parser.add_argument("--store", default=None, help="Override store path")
    parser.add_argument("--api-key", default=None)
    parser.add_argument("--debug", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("ingest", help="Ingest txt/md/pdf files")
    p.add_argument("paths", nargs="+")
    p.add_argument("--tag", action="append", default=[])

    p = sub.add_parser("memories", help="List memories")
    p.add_argument("--limit", type=int, default=50)
    p.add_argument("--type", choices=["auto", "explicit"], default=None)

    p = sub.add_parser("remember", help="Save an explicit memory")
    p.add_argument("text", nargs="+")
    p.add_argument("--category", default=MemoryCategory.USER_INFO.value)

    p = sub.add_parser("search", help="Semantic search over memories or documents")
    p.add_argument("query", nargs="+")
    p.add_argument("--docs", action="store_true")
    p.add_argument("--limit", type=int, default=5)

    p = sub.add_parser("forget", help="Delete a memory, a document or everything")
    p.add_argument("id", nargs="?", default=None)
    p.add_argument("--document", default=None)
    p.add_argument("--all", action="store_true")

    sub.add_parser("usage", help="Storage usage")
    return parser


def main(argv: List[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO, format="%(message)s")

    settings = AppSettings.from_env()
    if args.store is not None:
        settings = replace(settings, store_path=args.store)

    bundle = build_bundle(settings)
    # local embedders need no key, but the engine treats a missing key as "skip"
    api_key = args.api_key or settings.api_key or ("local" if settings.embedding.backend != "openrouter" else "")

    async def run() -> None:
        await _COMMANDS[args.command](bundle, args, api_key)
        await bundle.tasks.drain(timeout=10.0)

    try:
        asyncio.run(run())
    except MemoryEngineError as e:
        raise SystemExit(f"error: {type(e).__name__}: {e}")


if __name__ == "__main__":
    main()
