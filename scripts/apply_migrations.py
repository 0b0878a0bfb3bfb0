"""Apply call registry migrations against POSTGRES_URL (or --dsn)."""

from huddle.infra.migrate import main

if __name__ == "__main__":
    raise SystemExit(main())
