from __future__ import annotations

import argparse
import asyncio
import sys
from dataclasses import dataclass
from uuid import uuid4

from sqlalchemy import select, text

from chatdesk.core.config import EMBED_DIM
from chatdesk.domain.models import ApiKey, Base, DocumentChunk, Profile, WorkspaceMember
from chatdesk.ingestion.embeddings import embed_text
from chatdesk.persistence.db import SessionLocal, engine
from chatdesk.services.api_keys import generate_api_key


DEMO_USER_ID = "demo-owner"
DEMO_WORKSPACE_ID = "acme-store"
DEMO_EMAIL = "owner@acme.example"


@dataclass(frozen=True)
class DemoSection:
    # Keep seed content deterministic so embeddings and answers are repeatable.
    title: str
    text: str


@dataclass(frozen=True)
class DemoDocument:
    document_id: str
    title: str
    url: str
    sections: tuple[DemoSection, ...]


def build_demo_documents() -> tuple[DemoDocument, ...]:
    return (
        DemoDocument(
            document_id="returns-policy",
            title="Returns & Refunds",
            url="https://acme.example/pages/returns",
            sections=(
                DemoSection(
                    title="Return window",
                    text="Items can be returned within 30 days of delivery if they are unworn and in "
                    "their original packaging. Sale items are final.",
                ),
                DemoSection(
                    title="Refund timing",
                    text="Refunds go back to the original payment method within five business days "
                    "after the return is inspected at our warehouse.",
                ),
            ),
        ),
        DemoDocument(
            document_id="shipping-policy",
            title="Shipping",
            url="https://acme.example/pages/shipping",
            sections=(
                DemoSection(
                    title="Domestic shipping",
                    text="Standard shipping is free on orders over $50 and arrives in three to five "
                    "business days. Express shipping costs $12.",
                ),
                DemoSection(
                    title="International shipping",
                    text="We ship to Canada, the UK and the EU. Duties are calculated at checkout "
                    "and delivery takes seven to twelve business days.",
                ),
            ),
        ),
        DemoDocument(
            document_id="sizing-guide",
            title="Sizing Guide",
            url="https://acme.example/pages/sizing",
            sections=(
                DemoSection(
                    title="Sweaters",
                    text="Our sweaters run one size large. If you are between sizes, order the "
                    "smaller size for a regular fit.",
                ),
            ),
        ),
    )


def build_demo_chunks(workspace_id: str) -> list[DocumentChunk]:
    chunks: list[DocumentChunk] = []
    for document in build_demo_documents():
        for index, section in enumerate(document.sections):
            content = f"{section.title}: {section.text}"
            embedding = embed_text(content)
            if len(embedding) != EMBED_DIM:
                raise ValueError(f"Embedding dimension mismatch; expected {EMBED_DIM}.")
            chunks.append(
                DocumentChunk(
                    id=uuid4(),
                    workspace_id=workspace_id,
                    document_id=document.document_id,
                    title=document.title,
                    url=document.url,
                    chunk_index=index,
                    content=content,
                    embedding=embedding,
                    metadata_json={"section": section.title, "source_type": "demo"},
                )
            )
    return chunks


async def _create_schema() -> None:
    # Local convenience only; deployed databases are provisioned outside this repo.
    async with engine.begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)


async def seed_demo(args: argparse.Namespace) -> int:
    if args.create_schema:
        await _create_schema()

    async with SessionLocal() as session:
        profile = await session.get(Profile, DEMO_USER_ID)
        if profile is None:
            session.add(
                Profile(
                    user_id=DEMO_USER_ID,
                    workspace_id=DEMO_WORKSPACE_ID,
                    email=DEMO_EMAIL,
                    subscription_tier=args.tier,
                )
            )
        else:
            # Keep the demo owner aligned without touching other profiles.
            profile.workspace_id = DEMO_WORKSPACE_ID
            profile.subscription_tier = args.tier
        member = await session.get(WorkspaceMember, (DEMO_USER_ID, DEMO_WORKSPACE_ID))
        if member is None:
            session.add(WorkspaceMember(user_id=DEMO_USER_ID, workspace_id=DEMO_WORKSPACE_ID, role="owner"))
        # Flush the profile row before inserting API keys to satisfy FK constraints.
        await session.flush()

        key_id, raw_key, key_prefix, key_hash = generate_api_key()
        session.add(
            ApiKey(
                id=key_id,
                user_id=DEMO_USER_ID,
                key_prefix=key_prefix,
                key_hash=key_hash,
                name="seed-demo",
            )
        )

        existing = await session.execute(
            select(DocumentChunk.id).where(DocumentChunk.workspace_id == DEMO_WORKSPACE_ID).limit(1)
        )
        seeded_chunks = 0
        if existing.scalar_one_or_none() is None:
            chunks = build_demo_chunks(DEMO_WORKSPACE_ID)
            session.add_all(chunks)
            seeded_chunks = len(chunks)
        await session.commit()

    if seeded_chunks:
        print(f"Seeded workspace {DEMO_WORKSPACE_ID} with {seeded_chunks} chunks.")
    else:
        print(f"Workspace {DEMO_WORKSPACE_ID} already has documents; skipped chunks.")
    # Print the raw key once; only its hash is stored.
    print(f"api_key={raw_key}")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Seed a demo workspace with documents and an API key")
    parser.add_argument("--tier", default="basic", help="Subscription tier: basic|pro|ultra")
    parser.add_argument(
        "--create-schema",
        action="store_true",
        help="Create the pgvector extension and tables before seeding",
    )
    return parser


def main() -> int:
    # Surface clear failures and exit non-zero so dev scripts can detect issues.
    args = _build_parser().parse_args()
    try:
        return asyncio.run(seed_demo(args))
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
