"""Split a detection window into calendar-year chunks.

Clustering queries are run one chunk at a time so that no single query
spans a user's whole history.
"""

import datetime
from typing import NamedTuple


class TimeChunk(NamedTuple):
    begin: datetime.datetime
    end: datetime.datetime


def beginning_of_year(year: int, tzinfo=None) -> datetime.datetime:
    return datetime.datetime(year, 1, 1, tzinfo=tzinfo)


def end_of_year(year: int, tzinfo=None) -> datetime.datetime:
    return datetime.datetime(year, 12, 31, 23, 59, 59, 999999, tzinfo=tzinfo)


def year_chunks(start: datetime.datetime, end: datetime.datetime) -> list[TimeChunk]:
    """Return one chunk per calendar year touched by ``[start, end]``.

    The first chunk begins at ``start``; later chunks begin on 1 January.
    Every chunk ends at 31 December 23:59:59.999999 except the last one of a
    multi-year range, which ends at ``end``. A range inside one calendar
    year (zero-length and inverted ranges included) therefore yields a single
    chunk that runs to the end of that year.
    """
    tz = start.tzinfo
    years = list(range(start.year, end.year + 1)) or [start.year]

    chunks = [
        TimeChunk(
            begin=start if i == 0 else beginning_of_year(year, tz),
            end=end_of_year(year, tz),
        )
        for i, year in enumerate(years)
    ]
    if len(chunks) > 1:
        chunks[-1] = chunks[-1]._replace(end=end)
    return chunks
