"""
In-memory student table behind ``GET /search``.

The table is pulled from the warehouse with a single configured SQL query
and held as an immutable tuple of row dicts. Reloads build a new tuple and
swap the reference, so a search running during a reload sees either the old
table or the new one, never a mix.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

MIN_QUERY_LENGTH = 3


class DatasetUnavailableError(RuntimeError):
    """The table has never loaded successfully."""


class InvalidSearchQuery(ValueError):
    """Search input rejected before touching the table."""


@dataclass(frozen=True)
class SearchQuery:
    name: str
    admission: str
    school: str

    @classmethod
    def build(cls, name: Optional[str], admission: Optional[str], school: Optional[str],
              default_school: str) -> "SearchQuery":
        name = (name or "").strip()
        admission = (admission or "").strip()
        if len(name) < MIN_QUERY_LENGTH or len(admission) < MIN_QUERY_LENGTH:
            raise InvalidSearchQuery(
                f"name and admission must each be at least {MIN_QUERY_LENGTH} characters"
            )
        school = (school or "").strip() or default_school
        return cls(name=name, admission=admission, school=school)


class StudentDirectory:
    """Preloaded, periodically refreshed copy of the student table."""

    def __init__(self, url: str, query: str, name_column: str = "student_name",
                 admission_column: str = "admission_number", school_column: str = "school",
                 max_results: int = 50) -> None:
        self._url = url
        self._query = query
        self._name_column = name_column
        self._admission_column = admission_column
        self._school_column = school_column
        self._max_results = max_results
        self._rows: Optional[tuple[dict[str, Any], ...]] = None
        self._loaded_at: Optional[float] = None
        # Serializes loads only; searches read self._rows without locking.
        self._load_lock = threading.Lock()

    @property
    def configured(self) -> bool:
        return bool(self._url)

    @property
    def loaded(self) -> bool:
        return self._rows is not None

    @property
    def row_count(self) -> Optional[int]:
        rows = self._rows
        return len(rows) if rows is not None else None

    def load(self) -> int:
        """
        Run the dataset query and replace the in-memory table.

        Blocking; call it from a worker thread inside the event loop. On
        failure the previous table (if any) stays in place and the error is
        raised.
        """
        if not self._url:
            raise DatasetUnavailableError("DATASET_URL is not configured")

        with self._load_lock:
            start = time.monotonic()
            engine = create_engine(self._url)
            try:
                with engine.connect() as conn:
                    result = conn.execute(text(self._query))
                    rows = tuple(dict(row._mapping) for row in result)
            finally:
                engine.dispose()

            self._rows = rows
            self._loaded_at = time.time()
            logger.info("DATASET_LOADED rows=%d elapsed_ms=%.1f",
                        len(rows), (time.monotonic() - start) * 1000)
            return len(rows)

    def try_load(self) -> bool:
        """
        ``load`` that logs instead of raising. Returns True on success.

        Any failure counts, including a missing database driver: startup and
        the reload task must keep running without a table.
        """
        try:
            self.load()
            return True
        except DatasetUnavailableError as exc:
            logger.warning("DATASET_LOAD_SKIPPED reason=%s", exc)
        except SQLAlchemyError:
            logger.exception("DATASET_LOAD_FAIL")
        except Exception:
            logger.exception("DATASET_LOAD_FAIL reason=unexpected")
        return False

    def search(self, query: SearchQuery) -> list[dict[str, Any]]:
        """
        Rows whose name and admission number contain the query text and whose
        school equals the requested one, all case-insensitively.
        """
        rows = self._rows
        if rows is None:
            raise DatasetUnavailableError("student dataset is not loaded")

        name = query.name.casefold()
        admission = query.admission.casefold()
        school = query.school.casefold()

        matches: list[dict[str, Any]] = []
        for row in rows:
            if (name in _cell(row, self._name_column)
                    and admission in _cell(row, self._admission_column)
                    and _cell(row, self._school_column) == school):
                matches.append(row)
                if len(matches) >= self._max_results:
                    break
        return matches


def _cell(row: dict[str, Any], column: str) -> str:
    value = row.get(column)
    return "" if value is None else str(value).strip().casefold()
