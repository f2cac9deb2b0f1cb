"""
Command-line interface for running the RevAI application.

Usage:

```
python -m revai.main [server|batch|init-db|settings] [args...]
```

* ``server [port]`` starts the API server (default port 8000).
* ``batch [batch_size]`` processes one batch of articles flagged for AI
  evaluation, the same work the scheduler triggers through
  ``GET /evaluate/batch``.
* ``init-db`` creates the database tables.
* ``settings`` prints the latest AI settings version;
  ``settings add "<instructions>" [model]`` stores a new version.

If no argument is provided, the default is ``server``.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import List

from revai.backend.config import DEFAULT_BATCH_SIZE, ConfigurationError, get_log_level

USAGE = 'Usage: python -m revai.main [server [port]|batch [batch_size]|init-db|settings [add "<instructions>" [model]]]'


def run_server(args: List[str]) -> None:
    """Start the API server."""
    from revai.backend import server
    port = int(args[0]) if args else 8000
    server.run(host="0.0.0.0", port=port)


def run_batch(args: List[str]) -> None:
    """Run one evaluation batch and print the report as JSON."""
    from revai.backend import database as db
    from revai.backend.evaluator import EvaluationClient
    from revai.backend.orchestrator import run_evaluation_batch

    db.init_db()
    batch_size = int(args[0]) if args else None
    report = run_evaluation_batch(EvaluationClient(), batch_size=batch_size)
    print(json.dumps(report.to_dict(), indent=2))


def run_init_db(args: List[str]) -> None:
    from revai.backend import database as db
    db.init_db()
    print("Database initialised.")


def run_settings(args: List[str]) -> None:
    """Show the latest settings version or store a new one."""
    from revai.backend import database as db

    db.init_db()
    if args and args[0] == 'add':
        if len(args) < 2:
            print(USAGE)
            sys.exit(1)
        settings = db.create_ai_settings(
            instructions=args[1],
            temperature=0.1,
            max_tokens=500,
            seed=12345,
            model=args[2] if len(args) > 2 else 'gpt-4o-mini',
            batch_size=DEFAULT_BATCH_SIZE,
        )
    else:
        settings = db.get_ai_settings()
        if settings is None:
            print("No AI settings found. Use: settings add \"<instructions>\"")
            sys.exit(1)
    print(json.dumps(settings.to_dict(), indent=2))


COMMANDS = {
    "server": run_server,
    "batch": run_batch,
    "init-db": run_init_db,
    "settings": run_settings,
}


def main() -> None:
    """Entry point for the CLI.

    Parses the first command-line argument to determine which command
    to run and passes the remaining arguments on to it.
    """
    logging.basicConfig(
        level=get_log_level(),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    args = sys.argv[1:]
    command = args[0].lower() if args else "server"
    handler = COMMANDS.get(command)
    if handler is None:
        print(f"Unknown command: {command}")
        print(USAGE)
        sys.exit(1)
    try:
        handler(args[1:])
    except ConfigurationError as e:
        print(f"Configuration error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
