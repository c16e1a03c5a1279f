# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Elevated worker entry point.

    python -m melody.core.elevation_worker REQUEST_FILE RESULT_FILE

Runs the ElevatedTask described by REQUEST_FILE and writes RESULT_FILE
atomically:

    {"ok": true, "value": ...}
    {"ok": false, "error": {"kind": "...", "message": "...", ...}}

Exit status 0 means RESULT_FILE is authoritative (including expected task
errors); any other status is treated by the parent as ElevationFailed.
"""

import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict

import click

from melody.core.atomic import atomic_write
from melody.core.elevation import ElevatedTask
from melody.core.exceptions import ElevationFailedError, MelodyError
from melody.core.logger import setup_logging

logger = logging.getLogger("melody.elevation_worker")

EXIT_OK = 0
EXIT_TASK_CRASHED = 1
EXIT_BAD_REQUEST = 3


def _write_result(result_file: Path, document: Dict[str, Any]) -> None:
    atomic_write(result_file, json.dumps(document, default=str).encode("utf-8"), mode=0o644)


@click.command()
@click.argument("request_file", type=click.Path(dir_okay=False, path_type=Path))
@click.argument("result_file", type=click.Path(dir_okay=False, path_type=Path))
def main(request_file: Path, result_file: Path):
    """Run one elevated task and record its result."""
    setup_logging()
    try:
        task = ElevatedTask.from_dict(json.loads(request_file.read_text(encoding="utf-8")))
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.error(f"Unusable elevation request {request_file}: {e}")
        _write_result(result_file, {"ok": False, "error": ElevationFailedError(f"Bad request: {e}").to_dict()})
        sys.exit(EXIT_BAD_REQUEST)

    logger.info(f"Running elevated task {task.target}")
    try:
        value = task.run()
        document = {"ok": True, "value": value}
        # Fail here, not halfway through writing, if the value is not JSON
        json.dumps(document)
    except MelodyError as e:
        logger.error(f"Elevated task {task.target} failed: {e}")
        document = {"ok": False, "error": e.to_dict()}
    except Exception as e:
        logger.exception(f"Elevated task {task.target} crashed")
        error = ElevationFailedError(f"{type(e).__name__}: {e}", details={"target": task.target})
        _write_result(result_file, {"ok": False, "error": error.to_dict()})
        sys.exit(EXIT_TASK_CRASHED)

    _write_result(result_file, document)
    sys.exit(EXIT_OK)


if __name__ == "__main__":
    main()
