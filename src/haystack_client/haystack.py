"""Haystack scalar helpers used by the request builders

Only the handful of conversions the client needs itself: reference
normalisation, entity id extraction and date/time tags. Full scalar
encoding is left to the caller.
"""

from datetime import datetime, timezone

REF_PREFIX = "r:"
DATETIME_PREFIX = "t:"


def remove_prefix(value: str) -> str:
    """Remove the Haystack type prefix (e.g. "r:", "s:") if applied"""
    if not isinstance(value, str):
        raise TypeError("Value is not of type String")

    if len(value) > 1 and value[1] == ":":
        return value[2:]
    return value


def get_id(entity: dict, tag: str | None = None) -> str:
    """Get the bare id of an entity, or of a reference tag on the entity

    Args:
        entity: Entity as returned in a Haystack JSON grid row
        tag: Reference tag to read instead of "id"

    Returns:
        The id without prefix or trailing display name

    Raises:
        ValueError: If the tag is missing or not a reference
    """
    if tag:
        if tag not in entity:
            raise ValueError(f"Entity does not have tag {tag}")
        if not str(entity[tag]).startswith(REF_PREFIX):
            raise ValueError(f"Entity tag {tag} is not a reference tag")
        value = remove_prefix(entity[tag])
    else:
        if "id" not in entity:
            raise ValueError("No id present on the entity")
        value = remove_prefix(entity["id"])

    # "r:<uuid> <dis>" when the server appends the display name
    return value.split(" ", 1)[0]


def get_readable_name(entity: dict) -> str:
    """Get fqname of the entity if present, its id otherwise"""
    if "fqname" in entity:
        return remove_prefix(entity["fqname"])
    return get_id(entity)


def normalise_id(ref: str | dict) -> str:
    """Reduce "r:id", "@id", "id dis" or an entity to the bare id"""
    if isinstance(ref, dict):
        return get_id(ref)
    if not isinstance(ref, str) or not ref:
        raise ValueError(f"Invalid reference {ref!r}")
    if ref.startswith("@"):
        ref = ref[1:]
    return remove_prefix(ref).split(" ", 1)[0]


def to_ref(ref: str | dict) -> str:
    """Encode a reference in Haystack JSON form ("r:<id>")"""
    return f"{REF_PREFIX}{normalise_id(ref)}"


def ref_zinc(ref: str | dict) -> str:
    """Encode a reference in ZINC form ("@<id>")"""
    return f"@{normalise_id(ref)}"


def parse_datetime(value: object) -> datetime | None:
    """Parse a Haystack JSON date/time ("t:<iso8601> <tz name>")

    Returns:
        Timezone-aware datetime, or None if value is not a date/time
    """
    if not isinstance(value, str) or not value.startswith(DATETIME_PREFIX):
        return None

    iso = value[len(DATETIME_PREFIX) :].split(" ", 1)[0]
    if iso.endswith("Z"):
        iso = iso[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(iso)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return parsed


def epoch_ms(value: datetime) -> int:
    """Milliseconds since the epoch for an aware datetime"""
    return int(value.timestamp() * 1000)


def format_datetime(value: datetime) -> str:
    """Format a datetime in ZINC form, normalised to UTC"""
    if value.tzinfo is None:
        raise ValueError("Datetime must be timezone aware")
    utc = value.astimezone(timezone.utc)
    return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z") + (
        " UTC"
    )


def format_range(start: str | datetime, end: datetime | None = None) -> str:
    """Build a hisRead range from a keyword/string or a pair of datetimes

    Raises:
        TypeError: If end is given and either bound is not a datetime
    """
    if end is None:
        if isinstance(start, datetime):
            return format_datetime(start)
        return start

    if not isinstance(start, datetime):
        raise TypeError("`start` is not a datetime")
    if not isinstance(end, datetime):
        raise TypeError("`end` is not a datetime")
    return f"{format_datetime(start)},{format_datetime(end)}"
