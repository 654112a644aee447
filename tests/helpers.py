from datetime import datetime, timedelta, timezone

# Madrid, Puerta del Sol
CENTER = (40.4168, -3.7038)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def in_hours(hours: float) -> datetime:
    return utcnow() + timedelta(hours=hours)


def km_north(point: tuple, km: float) -> tuple:
    """A point roughly *km* kilometres north of *point*."""
    return (point[0] + km / 111.19, point[1])
