"""
Result Sink
Per-game JSON-lines log and the final JSON report
"""

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from .game import GameResult

logger = logging.getLogger(__name__)


class ResultSink:
    """
    Writes match output under one directory

    Files:
    - <name>_games.jsonl: one record per finished game, every GameResult field
    - <name>_<timestamp>.json: final report
    """

    def __init__(self, output_dir: str = "results", name: str = "match", game_log: bool = True):
        self.output_dir = Path(output_dir)
        self.name = name
        self.game_log_path: Optional[Path] = None
        self._lock = threading.Lock()

        self.output_dir.mkdir(parents=True, exist_ok=True)
        if game_log:
            self.game_log_path = self.output_dir / f"{name}_games.jsonl"

    def record(self, result: GameResult, engine_a: str = "A", engine_b: str = "B"):
        """Append one game record"""
        if self.game_log_path is None:
            return

        record = result.to_dict()
        record["white_engine"] = engine_a if result.white == "A" else engine_b
        record["black_engine"] = engine_b if result.white == "A" else engine_a

        with self._lock:
            with open(self.game_log_path, 'a') as f:
                f.write(json.dumps(record) + "\n")

    def write_report(self, report: Dict, filename: Optional[str] = None) -> Path:
        """Save the final report and return its path"""
        if filename is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            filename = f"{self.name}_{timestamp}.json"

        path = self.output_dir / filename
        with open(path, 'w') as f:
            json.dump(report, f, indent=2)

        logger.info(f"Results saved to {path}")
        return path
