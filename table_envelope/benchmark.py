"""
Table envelope encryption benchmark CLI.

Usage:
    table-envelope-benchmark [--entities N] [--properties N]

Or run directly:
    python -m table_envelope.benchmark

Uses the PostgreSQL key store when DATABASE_URL is set (environment or .env
file), otherwise an in-memory key resolver. No table service is contacted.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

import asyncpg
from dotenv import load_dotenv

from table_envelope.encryption import TABLE_ENCRYPTION_KEY_DETAILS, TableEncryptionPolicy
from table_envelope.errors import StorageError
from table_envelope.key_rotation import KeyRotationEntity, rewrap_content_key
from table_envelope.keys import InMemoryKeyResolver, KeyResolver, SymmetricKey
from table_envelope.models import EdmType, EntityProperty, TableEntity
from table_envelope.postgres import PostgresKeyStore


@dataclass
class BenchmarkResult:
    """Timings of one benchmark run, in seconds."""

    entity_count: int
    property_count: int
    encrypt_time: float
    decrypt_time: float
    rotate_time: float
    verify_time: float
    key_store: str


def _make_entities(entity_count: int, property_count: int) -> List[TableEntity]:
    entities = []
    for i in range(entity_count):
        properties: Dict[str, EntityProperty] = {}
        for p in range(property_count):
            # Every other property is encrypted.
            properties[f"prop{p}"] = EntityProperty(
                EdmType.STRING, secrets.token_hex(16), encrypt=p % 2 == 0
            )
        entities.append(TableEntity("bench", f"row{i:06d}", properties, etag="*"))
    return entities


def _plain(properties: Dict[str, EntityProperty]) -> Dict[str, str]:
    return {name: prop.value for name, prop in properties.items()}


def _print_perf(label: str, duration: float, count: int) -> None:
    rate = count / duration if duration > 0 else float("inf")
    print(f"[PERF] {label:<20} {duration * 1000:10.3f}ms | {rate:10.2f} entities/sec")


async def run_benchmark(
    entity_count: int = 1000,
    property_count: int = 10,
    database_url: Optional[str] = None,
) -> BenchmarkResult:
    """Encrypt, decrypt, rotate and re-verify `entity_count` entities."""
    print("=== Table Envelope Encryption Benchmark ===\n")
    print(f"Entities: {entity_count} | Properties per entity: {property_count}\n")

    pool: Optional[asyncpg.Pool] = None
    resolver: KeyResolver
    try:
        if database_url:
            pool = await asyncpg.create_pool(database_url)
            store = PostgresKeyStore(pool)
            await store.ensure_schema()
            old_key = await store.create_key()
            resolver = store
            key_store = "postgres"
        else:
            old_key = SymmetricKey.generate()
            resolver = InMemoryKeyResolver([old_key])
            key_store = "memory"
        print(f"[SETUP] Key store: {key_store} | Key: {old_key.kid}")

        policy = TableEncryptionPolicy(key=old_key, key_resolver=resolver)
        entities = _make_entities(entity_count, property_count)

        start = time.perf_counter()
        encrypted = [
            await policy.encrypt_entity(e.properties, e.partition_key, e.row_key)
            for e in entities
        ]
        encrypt_time = time.perf_counter() - start
        _print_perf("Encrypt", encrypt_time, entity_count)

        start = time.perf_counter()
        for entity, properties in zip(entities, encrypted):
            decrypted = await policy.decrypt_properties(properties)
            if _plain(decrypted) != _plain(entity.properties):
                raise StorageError(f"Round trip mismatch for {entity.row_key}")
        decrypt_time = time.perf_counter() - start
        _print_perf("Decrypt", decrypt_time, entity_count)

        if isinstance(resolver, PostgresKeyStore):
            _, new_key = await resolver.rotate_active_key()
        else:
            new_key = SymmetricKey.generate()
            await resolver.put_key(new_key)

        start = time.perf_counter()
        rotated = []
        for entity, properties in zip(entities, encrypted):
            snapshot = KeyRotationEntity.from_entity(
                TableEntity(entity.partition_key, entity.row_key, properties, etag="*")
            )
            metadata_json = await rewrap_content_key(snapshot, policy, new_key)
            patched = dict(properties)
            patched[TABLE_ENCRYPTION_KEY_DETAILS] = EntityProperty(EdmType.STRING, metadata_json)
            rotated.append(patched)
        rotate_time = time.perf_counter() - start
        _print_perf("Rotate", rotate_time, entity_count)

        # The new key alone, with no resolver, must open every rotated entity.
        new_policy = TableEncryptionPolicy(key=new_key)
        start = time.perf_counter()
        for entity, properties in zip(entities, rotated):
            decrypted = await new_policy.decrypt_properties(properties)
            if _plain(decrypted) != _plain(entity.properties):
                raise StorageError(f"Rotated round trip mismatch for {entity.row_key}")
        verify_time = time.perf_counter() - start
        _print_perf("Verify (new key)", verify_time, entity_count)

        print(f"\n[OK] {entity_count} entities rotated from {old_key.kid} to {new_key.kid}")
    finally:
        if pool is not None:
            await pool.close()

    return BenchmarkResult(
        entity_count=entity_count,
        property_count=property_count,
        encrypt_time=encrypt_time,
        decrypt_time=decrypt_time,
        rotate_time=rotate_time,
        verify_time=verify_time,
        key_store=key_store,
    )


def _positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be positive: {value}")
    return number


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="table-envelope-benchmark",
        description="Benchmark table entity envelope encryption and key rotation.",
    )
    parser.add_argument("--entities", type=_positive_int, default=1000)
    parser.add_argument("--properties", type=_positive_int, default=10)
    args = parser.parse_args(argv)

    load_dotenv()
    database_url = os.environ.get("DATABASE_URL")

    try:
        asyncio.run(run_benchmark(args.entities, args.properties, database_url))
    except KeyboardInterrupt:
        print("\nBenchmark interrupted")
        sys.exit(130)
    except StorageError as e:
        print(f"ERROR: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
