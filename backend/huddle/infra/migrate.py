"""Apply the call registry's SQL migrations with psycopg2.

Migrations live in ``huddle/infra/migrations`` as ``NNNN_name.sql``. Each file
runs in its own transaction together with its ledger row, so a failing file
leaves nothing half-applied.
"""

from __future__ import annotations

import argparse
import logging
import time
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

import psycopg2

from huddle.obs import logging as obs_logging
from huddle.settings import settings

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"

LEDGER_TABLE = "call_schema_migrations"


def migration_version(path: Path) -> str:
	return path.name.split("_", 1)[0]


def pending_migrations(paths: Iterable[Path], applied: set[str]) -> List[Path]:
	return [path for path in sorted(paths, key=lambda item: item.name) if migration_version(path) not in applied]


def applied_versions(conn) -> set[str]:
	with conn:
		with conn.cursor() as cur:
			cur.execute(
				f"""
				CREATE TABLE IF NOT EXISTS {LEDGER_TABLE} (
					version TEXT PRIMARY KEY,
					applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
				)
				"""
			)
			cur.execute(f"SELECT version FROM {LEDGER_TABLE}")
			return {row[0] for row in cur.fetchall()}


def apply_pending(conn, directory: Path = MIGRATIONS_DIR) -> List[str]:
	"""Apply every migration not yet in the ledger and return their versions."""
	applied = applied_versions(conn)
	done: List[str] = []
	for path in pending_migrations(directory.glob("*.sql"), applied):
		version = migration_version(path)
		with conn:
			with conn.cursor() as cur:
				cur.execute(path.read_text(encoding="utf-8"))
				cur.execute(f"INSERT INTO {LEDGER_TABLE} (version) VALUES (%s)", (version,))
		logger.info("call migration applied", extra={"version": version, "file": path.name})
		done.append(version)
	return done


def connect(dsn: str, *, retries: int = 30, delay: float = 2.0):
	for attempt in range(1, retries + 1):
		try:
			return psycopg2.connect(dsn)
		except psycopg2.OperationalError:
			if attempt == retries:
				raise
			logger.warning("postgres not ready", extra={"attempt": attempt, "retries": retries})
			time.sleep(delay)
	raise RuntimeError("retries must be at least 1")


def main(argv: Optional[Sequence[str]] = None) -> int:
	parser = argparse.ArgumentParser(description="Apply call registry migrations")
	parser.add_argument("--dsn", default=settings.postgres_url)
	parser.add_argument("--retries", type=int, default=30)
	parser.add_argument("--dry-run", action="store_true", help="list pending migrations without applying them")
	args = parser.parse_args(argv)

	obs_logging.configure_logging()
	conn = connect(args.dsn, retries=args.retries)
	try:
		if args.dry_run:
			for path in pending_migrations(MIGRATIONS_DIR.glob("*.sql"), applied_versions(conn)):
				logger.info("call migration pending", extra={"file": path.name})
			return 0
		done = apply_pending(conn)
	finally:
		conn.close()
	if not done:
		logger.info("call schema up to date")
	return 0
