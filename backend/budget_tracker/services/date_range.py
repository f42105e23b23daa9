from datetime import date, datetime, time, timezone

END_OF_DAY = time(23, 59, 59, 999000)


def to_utc_naive(value: datetime | date) -> datetime:
    """Naive values are taken as UTC; aware values are converted to UTC."""
    if not isinstance(value, datetime):
        return datetime.combine(value, time.min)
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def clamp_to_days(start: datetime | date, end: datetime | date) -> tuple[datetime, datetime]:
    start_at = datetime.combine(to_utc_naive(start).date(), time.min)
    end_at = datetime.combine(to_utc_naive(end).date(), END_OF_DAY)
    return start_at, end_at


def span_in_days(start: datetime, end: datetime) -> int:
    return (end.date() - start.date()).days


def check_span(start: datetime, end: datetime, max_days: int) -> None:
    days = span_in_days(start, end)
    if days < 0 or days > max_days:
        raise ValueError(f"Date range must be between 0 and {max_days} days")
