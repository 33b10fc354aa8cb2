"""
Analysis history: the most recent synthesis results per symbol.
"""
import json
import os
import tempfile
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from loguru import logger

from stockintel.models import SynthesisResult


class AnalysisHistory:
    """
    Keeps the last `max_per_symbol` analyses per symbol, newest first.

    Every write builds a new mapping and swaps it in, and the optional JSON
    file is replaced atomically, so readers never see a half-written state.
    """

    def __init__(self, max_per_symbol: int = 10, path: Optional[str] = None):
        """
        Initialize history.

        Args:
            max_per_symbol: Analyses kept per symbol
            path: Optional JSON file to persist to
        """
        self.max_per_symbol = max_per_symbol
        self.path = Path(path) if path else None
        self._entries: Mapping[str, Tuple[Dict[str, Any], ...]] = MappingProxyType({})

        if self.path is not None and self.path.exists():
            self._load()

        logger.info(
            f"AnalysisHistory initialized | Max per symbol: {max_per_symbol}, "
            f"Path: {self.path or 'memory'}, Symbols: {len(self._entries)}"
        )

    def add(self, result: SynthesisResult) -> None:
        symbol = result.symbol.upper()
        record = result.to_dict()

        updated = dict(self._entries)
        updated[symbol] = ((record,) + self._entries.get(symbol, ()))[:self.max_per_symbol]
        self._entries = MappingProxyType(updated)
        self._save()

    def get(self, symbol: str) -> List[Dict[str, Any]]:
        """Analyses for a symbol, newest first."""
        return list(self._entries.get(symbol.upper(), ()))

    def latest(self, symbol: str) -> Optional[Dict[str, Any]]:
        entries = self._entries.get(symbol.upper(), ())
        return entries[0] if entries else None

    def symbols(self) -> List[str]:
        return sorted(self._entries)

    def clear(self, symbol: Optional[str] = None) -> None:
        if symbol is None:
            self._entries = MappingProxyType({})
        else:
            updated = dict(self._entries)
            updated.pop(symbol.upper(), None)
            self._entries = MappingProxyType(updated)
        self._save()

    def _load(self) -> None:
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Could not read analysis history {self.path}: {e}")
            return

        self._entries = MappingProxyType({
            symbol.upper(): tuple(records[:self.max_per_symbol])
            for symbol, records in raw.items() if isinstance(records, list)
        })

    def _save(self) -> None:
        if self.path is None:
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {symbol: list(records) for symbol, records in self._entries.items()}

        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix='.history-', suffix='.json')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
