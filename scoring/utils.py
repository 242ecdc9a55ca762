"""
Bucketing helpers used by scoring.metrics.
Maps a DateWindow onto contiguous day or month buckets.
"""
from datetime import datetime, timedelta
from typing import Optional, Union

from normalize.models import BucketSize, DateWindow

# windows up to this many days are bucketed per day, longer ones per calendar month
DAILY_BUCKET_MAX_DAYS = 366

ONE_DAY = timedelta(days=1)


def months_between(start: datetime, end: datetime) -> int:
    return (end.year - start.year) * 12 + (end.month - start.month)


def choose_bucket_size(window: DateWindow, requested: Optional[Union[BucketSize, str]] = None) -> BucketSize:
    """Return the requested bucket size, or pick one from the window length when none is requested."""
    if requested:
        return BucketSize(requested)
    if bucket_count(window, BucketSize.DAY) <= DAILY_BUCKET_MAX_DAYS:
        return BucketSize.DAY
    return BucketSize.MONTH


def bucket_count(window: DateWindow, size: BucketSize) -> int:
    if size == BucketSize.DAY:
        return (window.to_date - window.from_date) // ONE_DAY + 1
    return months_between(window.from_date, window.to_date) + 1


def bucket_index(moment: datetime, window: DateWindow, size: BucketSize) -> int:
    """Offset of moment's bucket from the start of the window (may fall outside [0, count))."""
    if size == BucketSize.DAY:
        return (moment - window.from_date) // ONE_DAY
    return months_between(window.from_date, moment)
