"""
Parse cache for roster extract files.

One RosterCache belongs to one run: it is created when the run starts and
cleared when it ends, so a later run never sees rows parsed by an earlier one.
"""

import csv
import logging
from pathlib import Path
from typing import Dict, List

from rostersync.errors import SetupError
from rostersync.roster.layout import EXTRACT_FILES, OPTIONAL_EXTRACTS

logger = logging.getLogger(__name__)


class RosterCache:
    """Reads and caches roster extract files keyed by file name."""

    def __init__(self, extract_dir: str, delimiter: str = ",", encoding: str = "utf-8-sig"):
        """
        Initialize the cache.

        Args:
            extract_dir: Directory holding the unpacked roster extract
            delimiter: Field delimiter used by the extract files
            encoding: File encoding
        """
        self.extract_dir = Path(extract_dir)
        self.delimiter = delimiter
        self.encoding = encoding
        self._rows: Dict[str, List[List[str]]] = {}

    def rows(self, table: str) -> List[List[str]]:
        """
        Return the data rows of an extract table (header row dropped).

        Args:
            table: Table key from EXTRACT_FILES

        Raises:
            SetupError: If a required extract file is missing
        """
        file_name = EXTRACT_FILES[table]

        if file_name in self._rows:
            return self._rows[file_name]

        path = self.extract_dir / file_name
        if not path.exists():
            if table in OPTIONAL_EXTRACTS:
                logger.info(f"Optional extract {file_name} not present, treating as empty")
                self._rows[file_name] = []
                return self._rows[file_name]
            raise SetupError(f"Required roster extract missing: {path}")

        with open(path, "r", encoding=self.encoding, newline="") as f:
            reader = csv.reader(f, delimiter=self.delimiter)
            rows = [row for row in reader if row]

        self._rows[file_name] = rows[1:]
        logger.info(f"Parsed {len(self._rows[file_name])} rows from {file_name}")
        return self._rows[file_name]

    def invalidate(self) -> None:
        """Drop every cached table."""
        self._rows.clear()
        logger.debug("Roster parse cache cleared")

    def __contains__(self, file_name: str) -> bool:
        return file_name in self._rows

    def __enter__(self):
        self.invalidate()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.invalidate()
