from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
LOGGER_TREES = ("aggregator", "infra")


def configure_logging(level: Union[int, str] = logging.INFO, run_dir: Optional[Path] = None) -> logging.Logger:
    """Install stream (and optional file) handlers on the `aggregator` and `infra` logger trees.

    Both trees share the same handler objects, so `infra.rpc` and `infra.gas`
    records land in the same stream and run log as the aggregator's own.
    """
    fmt = logging.Formatter(LOG_FORMAT)
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if run_dir is not None:
        log_dir = Path(run_dir) / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_dir / "aggregator.log", encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(fmt)

    lvl = level if isinstance(level, int) else str(level).upper()
    for name in LOGGER_TREES:
        tree = logging.getLogger(name)
        tree.setLevel(lvl)
        tree.handlers.clear()
        for handler in handlers:
            tree.addHandler(handler)
    return logging.getLogger("aggregator")


def append_jsonl(run_dir: Path, name: str, obj: Dict[str, Any]) -> None:
    path = Path(run_dir) / name
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as fh:
        fh.write(json.dumps(obj) + "\n")
