"""
Batch ingestion of legal documents into the CodexAI RAG store.

Processes every PDF, .txt and .md file in a directory:
- Loader: PyMuPDF4LLM for PDFs, UTF-8 read for text
- Chunker: word windows (RAG_CHUNK_SIZE / RAG_CHUNK_OVERLAP)
- Embeddings: provider from EMBEDDING_PROVIDER
- Storage: RAG_STORE (postgres for a persistent index)

Citation metadata for public sources is read from an optional sidecar JSON
file next to each document (contrat.pdf -> contrat.json), e.g.
{"code": "Code Civil", "article": "1134"} or
{"jurisdiction": "Cour de cassation", "date": "2023-05-10", "caseNumber": "21-12.345"}.

The document id is the file stem, so re-running replaces previous chunks.

Usage:
    python ingest_documents.py --dir ~/codes/ --source-type public-statute
    python ingest_documents.py --dir ~/vault/ --source-type private-vault --tenant-id cabinet-dupont
"""

import sys
import json
import time
import asyncio
import argparse
import logging
from pathlib import Path
from dotenv import load_dotenv

# Ensure project root is on path
PROJECT_ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(PROJECT_ROOT))
load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def read_sidecar_metadata(filepath: Path) -> dict:
    """Citation metadata from <stem>.json, if present."""
    sidecar = filepath.with_suffix(".json")
    if not sidecar.exists():
        return {}
    with open(sidecar, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{sidecar.name} must contain a JSON object")
    return data


async def ingest_file(filepath: Path, pipeline, source_type, tenant_id) -> int:
    """Ingest a single file. Returns number of chunks created."""
    from execution.codex_rag.document_loader import load_document

    document = load_document(filepath)
    if not document.text:
        logger.warning(f"  Skipping {filepath.name}: no text extracted")
        return 0

    metadata = {**document.metadata, **read_sidecar_metadata(filepath)}
    record = await pipeline.ingest(
        document_id=filepath.stem,
        text=document.text,
        source_type=source_type,
        metadata=metadata,
        tenant_id=tenant_id,
    )
    return record.chunk_count


async def run(args) -> int:
    from execution.codex_rag.config import RAGConfig
    from execution.codex_rag.document_loader import MIME_TYPES
    from execution.codex_rag.models import IngestionStatus, SourceType
    from execution.codex_rag.pipeline import build_pipeline

    input_dir = Path(args.dir)
    if not input_dir.exists():
        logger.error(f"Directory not found: {input_dir}")
        return 1

    source_type = SourceType.parse(args.source_type)
    if source_type is None:
        logger.error(f"Unknown source type: {args.source_type}")
        return 1
    if source_type is SourceType.PRIVATE_VAULT and not args.tenant_id:
        logger.error("--tenant-id is required for private-vault documents")
        return 1

    files = sorted(p for p in input_dir.iterdir() if p.suffix.lower() in MIME_TYPES)
    if not files:
        logger.error(f"No PDF, TXT or MD files found in {input_dir}")
        return 1

    config = RAGConfig.from_env()
    pipeline = await build_pipeline(config)
    logger.info(f"Found {len(files)} files in {input_dir}")
    logger.info(f"  Source type: {source_type.value}")
    logger.info(f"  Embedding: {config.embedding_provider} ({config.embedding_model})")
    logger.info(f"  Store: {config.store}")

    start_time = time.time()
    total_chunks = 0
    success_count = 0
    fail_count = 0
    skip_count = 0

    try:
        for i, filepath in enumerate(files):
            if args.skip_complete:
                record = await pipeline.get_ingestion_status(filepath.stem, tenant_id=args.tenant_id)
                if record is not None and record.status is IngestionStatus.COMPLETE:
                    skip_count += 1
                    continue

            logger.info(f"[{i+1}/{len(files)}] Processing: {filepath.name}")
            try:
                n_chunks = await ingest_file(filepath, pipeline, source_type, args.tenant_id)
                total_chunks += n_chunks
                success_count += 1
                logger.info(f"  -> {n_chunks} chunks")
            except Exception as e:
                fail_count += 1
                logger.error(f"  FAILED: {e}")
    finally:
        await pipeline.close()

    elapsed = time.time() - start_time

    # Summary
    print("\n" + "=" * 60)
    print("INGESTION COMPLETE")
    print("=" * 60)
    print(f"Files processed: {success_count}/{len(files)} ({fail_count} failed, {skip_count} skipped)")
    print(f"Total chunks:    {total_chunks}")
    print(f"Time elapsed:    {elapsed:.1f}s")
    print(f"Tenant ID:       {args.tenant_id or '-'}")
    print("=" * 60)
    return 0 if fail_count == 0 else 2


def main():
    arg_parser = argparse.ArgumentParser(description="Ingest legal documents into CodexAI")
    arg_parser.add_argument(
        "--dir",
        type=str,
        required=True,
        help="Directory containing PDF, TXT and MD files",
    )
    arg_parser.add_argument(
        "--source-type",
        type=str,
        default="private-vault",
        help="private-vault, public-statute or public-caselaw (default: private-vault)",
    )
    arg_parser.add_argument(
        "--tenant-id",
        type=str,
        default=None,
        help="Owning tenant (required for private-vault)",
    )
    arg_parser.add_argument(
        "--skip-complete",
        action="store_true",
        help="Skip documents whose previous ingestion completed",
    )
    args = arg_parser.parse_args()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
