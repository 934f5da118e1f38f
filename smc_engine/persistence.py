"""
Result persistence
"""
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import BacktestResult

logger = logging.getLogger(__name__)


class ResultSink(ABC):
    """Receives a finished result exactly once"""

    @abstractmethod
    def save(self, result: BacktestResult, run_id: Optional[str] = None) -> Optional[Path]:
        pass


class JsonResultStore(ResultSink):
    """
    JSON files under <results_dir>/<symbol>/

    Every run gets its own history file, never overwritten; latest_results.json
    always points at the most recent run.
    """

    def __init__(self, results_dir: str = "backtest_results"):
        self.results_dir = Path(results_dir)

    def _symbol_dir(self, symbol: str) -> Path:
        return self.results_dir / symbol.replace('/', '_')

    def save(self, result: BacktestResult, run_id: Optional[str] = None) -> Path:
        now = datetime.now(timezone.utc)
        symbol_dir = self._symbol_dir(result.symbol)
        history_dir = symbol_dir / "history"
        history_dir.mkdir(parents=True, exist_ok=True)

        name = now.strftime("%Y-%m-%d_%H-%M-%S")
        if run_id:
            name = f"{name}_{run_id}"
        history_file = history_dir / f"{name}.json"

        payload = {
            'run_id': run_id,
            'generated_at': now.isoformat(),
            'result': result.to_dict()
        }

        # 'x' refuses to replace an earlier run
        with open(history_file, 'x', encoding='utf-8') as f:
            json.dump(payload, f, indent=2)
        with open(symbol_dir / "latest_results.json", 'w', encoding='utf-8') as f:
            json.dump(payload, f, indent=2)

        logger.info(f"Saved backtest results for {result.symbol} to {history_file}")
        return history_file

    def load_latest(self, symbol: str) -> Optional[Dict[str, Any]]:
        latest = self._symbol_dir(symbol) / "latest_results.json"
        if not latest.exists():
            return None
        with open(latest, 'r', encoding='utf-8') as f:
            return json.load(f)

    def list_history(self, symbol: str) -> List[str]:
        history_dir = self._symbol_dir(symbol) / "history"
        if not history_dir.exists():
            return []
        return sorted(p.stem for p in history_dir.glob("*.json"))
