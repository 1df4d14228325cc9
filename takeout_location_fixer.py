#!/usr/bin/env python3
"""
Google Takeout location fixer
=============================

Adds GPS latitude/longitude to every JPEG in a directory that does not carry
coordinates yet, using the location history of a Google Takeout export
(``Location History/Records.json``).

Strategy
--------
- We *stream* ``Records.json`` with *ijson* so that the (often several
  hundred MB) export is never materialised as one JSON tree.
- Every entry of ``locations[]`` becomes a LocationSample
  (utc_datetime, latitudeE7, longitudeE7). Coordinates stay fixed-point
  integers until they are written into the photo.
- All samples are sorted once into a LocationIndex. Range queries bisect the
  sorted timestamps, so two samples sharing a timestamp are both kept.
- Each JPEG is read with *piexif*:
  * Photos that already have GPSLatitude/GPSLongitude are left alone.
  * The naive ``DateTimeOriginal`` is treated as being in the camera's
    timezone (default UTC, configurable) and normalised to UTC.
  * The closest sample inside ``[time - tolerance, time + tolerance]`` is
    picked. An exact timestamp match wins immediately; among equally distant
    samples the earlier one wins.
  * GPSLatitude{,Ref} and GPSLongitude{,Ref} are written back in-place.

Usage
-----
    python takeout_location_fixer.py \
        --location-file "/path/Location History/Records.json" \
        --photos-directory /path/to/jpeg/dir \
        [--tolerance 1h] [--camera-tz Europe/Lisbon] [--dry-run] [-y]

A ``.bak`` copy is written next to every modified image before the changes
are saved, unless ``--skip-backup`` is given.
"""
from __future__ import annotations

import argparse
import bisect
import datetime as dt
import logging
import pathlib
import re
import shutil
import sys
from collections import Counter
from dataclasses import dataclass
from typing import IO, Iterable, Iterator, List, Optional, Tuple

import ijson  # type: ignore
import piexif  # type: ignore
import pytz  # type: ignore
from dateutil import parser as dtparse  # type: ignore

LOGGER = logging.getLogger("takeout_location_fixer")

E7 = 10_000_000
EXIF_DATETIME_FORMAT = "%Y:%m:%d %H:%M:%S"
PHOTO_EXTENSIONS = {".jpg", ".jpeg"}
BACKUP_SUFFIX = ".bak"

_EPOCH = dt.datetime(1970, 1, 1, tzinfo=dt.timezone.utc)
_MIN_UTC = dt.datetime.min.replace(tzinfo=dt.timezone.utc)
_MAX_UTC = dt.datetime.max.replace(tzinfo=dt.timezone.utc)

# ---------------------------------------------------------------------------
# Errors & fixed-point helpers
# ---------------------------------------------------------------------------


class MalformedInput(ValueError):
    """The location export could not be read or does not match the schema."""

    def __init__(self, path: pathlib.Path, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


def e7_to_degrees(value: int) -> float:
    return value / E7


def degrees_to_e7(degrees: float) -> int:
    return round(degrees * E7)


def as_utc(value: dt.datetime) -> dt.datetime:
    """Return *value* as an aware UTC datetime. Naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


# ---------------------------------------------------------------------------
# Location index
# ---------------------------------------------------------------------------


@dataclass(frozen=True, order=True)
class LocationSample:
    timestamp: dt.datetime
    latitude_e7: int
    longitude_e7: int

    def __post_init__(self):
        object.__setattr__(self, "timestamp", as_utc(self.timestamp))

    @property
    def latitude(self) -> float:
        return e7_to_degrees(self.latitude_e7)

    @property
    def longitude(self) -> float:
        return e7_to_degrees(self.longitude_e7)


class LocationIndex:
    """Read-only collection of samples ordered by timestamp.

    Samples are kept in a sorted list next to a parallel list of their
    timestamps; range lookups bisect the timestamps. Equal timestamps are
    allowed and every sample is retained, their relative order is whatever
    the stable sort left them in.
    """

    def __init__(self, samples: Iterable[LocationSample] = ()):
        self._samples: List[LocationSample] = sorted(samples, key=lambda s: s.timestamp)
        self._keys: List[dt.datetime] = [s.timestamp for s in self._samples]

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[LocationSample]:
        return self.full_ascend()

    @property
    def first(self) -> Optional[LocationSample]:
        return self._samples[0] if self._samples else None

    @property
    def last(self) -> Optional[LocationSample]:
        return self._samples[-1] if self._samples else None

    def range_query(self, low: dt.datetime, high: dt.datetime) -> Iterator[LocationSample]:
        """Yield samples with ``low <= timestamp <= high``, oldest first."""
        low, high = as_utc(low), as_utc(high)
        if low > high:
            return
        start = bisect.bisect_left(self._keys, low)
        stop = bisect.bisect_right(self._keys, high)
        for position in range(start, stop):
            yield self._samples[position]

    def full_ascend(self) -> Iterator[LocationSample]:
        yield from self._samples


# ---------------------------------------------------------------------------
# Parsing Records.json lazily with ijson
# ---------------------------------------------------------------------------


def load_locations(location_path: pathlib.Path | str) -> LocationIndex:
    """Stream-parse Records.json and return a LocationIndex.

    Raises MalformedInput if the file cannot be read, is not valid JSON, or
    any ``locations[]`` record is missing a field or has the wrong type.
    """
    location_path = pathlib.Path(location_path)
    samples: List[LocationSample] = []

    try:
        with location_path.open("rb") as f:
            for position, record in enumerate(ijson.items(f, "locations.item")):
                try:
                    samples.append(_sample_from_record(record))
                except (KeyError, TypeError, ValueError, OverflowError) as exc:
                    raise MalformedInput(location_path, f"record {position}: {exc}") from exc
    except OSError as exc:
        raise MalformedInput(location_path, f"cannot read file: {exc}") from exc
    except (ijson.JSONError, UnicodeDecodeError) as exc:
        raise MalformedInput(location_path, f"invalid JSON: {exc}") from exc

    index = LocationIndex(samples)
    if index.first is not None:
        LOGGER.info(
            "Loaded %s locations (%s .. %s)",
            len(index),
            index.first.timestamp.isoformat(),
            index.last.timestamp.isoformat(),
        )
    else:
        LOGGER.info("Loaded 0 locations")
    return index


def _sample_from_record(record) -> LocationSample:
    if not isinstance(record, dict):
        raise TypeError(f"expected an object, got {type(record).__name__}")
    return LocationSample(
        timestamp=_parse_record_time(record),
        latitude_e7=_require_int(record, "latitudeE7"),
        longitude_e7=_require_int(record, "longitudeE7"),
    )


def _require_int(record: dict, key: str) -> int:
    if key not in record:
        raise KeyError(f"missing {key!r}")
    value = record[key]
    # ijson hands out non-integral numbers as Decimal; those are rejected too
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{key!r} must be an integer, got {value!r}")
    return value


def _parse_record_time(record: dict) -> dt.datetime:
    """Read ``timestamp`` (ISO-8601) or, for older exports, ``timestampMs``."""
    if "timestamp" in record:
        raw = record["timestamp"]
        if not isinstance(raw, str):
            raise TypeError(f"'timestamp' must be a string, got {raw!r}")
        return as_utc(dtparse.isoparse(raw))
    if "timestampMs" in record:
        raw = record["timestampMs"]
        if isinstance(raw, bool) or not isinstance(raw, (str, int)):
            raise TypeError(f"'timestampMs' must be a string or integer, got {raw!r}")
        return _EPOCH + dt.timedelta(milliseconds=int(raw))
    raise KeyError("missing 'timestamp'")


# ---------------------------------------------------------------------------
# Nearest-sample lookup
# ---------------------------------------------------------------------------


def find_nearest(
    index: LocationIndex,
    target: dt.datetime,
    tolerance: dt.timedelta | None,
) -> LocationSample | None:
    """Return the sample closest in time to *target*, or None.

    Only samples within ``[target - tolerance, target + tolerance]`` are
    considered; a tolerance of None scans the whole index.
    """
    target = as_utc(target)
    if tolerance is None:
        candidates = index.full_ascend()
    else:
        candidates = index.range_query(_shift(target, -tolerance), _shift(target, tolerance))

    best: LocationSample | None = None
    best_distance = dt.timedelta.max
    for sample in candidates:
        if sample.timestamp == target:
            return sample
        distance = abs(sample.timestamp - target)
        # strict: the earlier of two equidistant samples is kept
        if distance < best_distance:
            best = sample
            best_distance = distance

    if best is None or (tolerance is not None and best_distance > tolerance):
        LOGGER.debug("No location found within %s of %s", tolerance, target.isoformat())
        return None
    return best


def _shift(value: dt.datetime, delta: dt.timedelta) -> dt.datetime:
    """Add *delta* to *value*, clamping at the ends of the datetime range."""
    try:
        return value + delta
    except OverflowError:
        return _MAX_UTC if delta > dt.timedelta(0) else _MIN_UTC


# ---------------------------------------------------------------------------
# Argument types
# ---------------------------------------------------------------------------

_DURATION_UNITS_US = {
    "ns": 0.001,
    "us": 1,
    "µs": 1,
    "μs": 1,
    "ms": 1_000,
    "s": 1_000_000,
    "m": 60_000_000,
    "h": 3_600_000_000,
}
# largest duration a signed 64-bit nanosecond count can hold
_MAX_DURATION_US = (2**63 - 1) // 1000
_DURATION_PART = r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)"
_DURATION_RE = re.compile(f"(?:{_DURATION_PART})+")


def parse_duration(text: str) -> dt.timedelta:
    """Parse durations such as ``1h``, ``30m``, ``1h30m30s`` or ``250ms``."""
    value = text.strip()
    if value == "0":
        return dt.timedelta(0)
    if not _DURATION_RE.fullmatch(value):
        raise argparse.ArgumentTypeError(
            f"invalid duration {text!r} (expected e.g. 1h, 30m, 1h30m30s)"
        )
    micros = sum(float(number) * _DURATION_UNITS_US[unit] for number, unit in re.findall(_DURATION_PART, value))
    if micros > _MAX_DURATION_US:
        raise argparse.ArgumentTypeError(f"duration {text!r} is too large (max 2562047h)")
    return dt.timedelta(microseconds=micros)


def _timezone(name: str) -> dt.tzinfo:
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError as exc:
        raise argparse.ArgumentTypeError(f"unknown timezone {name!r}") from exc


# ---------------------------------------------------------------------------
# Photo processing helpers
# ---------------------------------------------------------------------------


@dataclass
class PendingUpdate:
    path: pathlib.Path
    exif_dict: dict
    sample: LocationSample
    capture_time: dt.datetime


@dataclass
class RunSummary:
    files_found: int = 0
    updated: int = 0
    no_location: int = 0
    no_datetime: int = 0
    gps_already_set: int = 0
    unreadable: int = 0
    backup_failed: int = 0
    write_failed: int = 0

    def log(self) -> None:
        LOGGER.info("Summary:")
        LOGGER.info("\tFiles processed: %s", self.files_found)
        LOGGER.info("\tSuccessfully updated files: %s", self.updated)
        LOGGER.info("\tFiles with no location found: %s", self.no_location)
        LOGGER.info("\tFiles with no date time found: %s", self.no_datetime)
        LOGGER.info("\tFiles with GPS metadata already set: %s", self.gps_already_set)
        LOGGER.info("\tFiles with unreadable metadata: %s", self.unreadable)
        LOGGER.info("\tFiles with backup failure: %s", self.backup_failed)
        LOGGER.info("\tFiles with write failure: %s", self.write_failed)


def find_photos(root: pathlib.Path) -> Tuple[List[pathlib.Path], Counter]:
    """Recursively collect JPEGs under *root*; other extensions are tallied."""
    photos: List[pathlib.Path] = []
    unsupported: Counter = Counter()
    for path in sorted(root.rglob("*")):
        if not path.is_file():
            continue
        extension = path.suffix.lower()
        if extension in PHOTO_EXTENSIONS:
            photos.append(path)
        else:
            unsupported[extension] += 1
    return photos, unsupported


def has_gps(exif_dict: dict) -> bool:
    gps_ifd = exif_dict.get("GPS") or {}
    return bool(gps_ifd.get(piexif.GPSIFD.GPSLatitude) or gps_ifd.get(piexif.GPSIFD.GPSLongitude))


def read_capture_time(exif_dict: dict) -> dt.datetime | None:
    """Naive ``DateTimeOriginal`` of a piexif dict, None when the tag is absent.

    Raises ValueError if the tag does not follow ``YYYY:MM:DD HH:MM:SS``.
    """
    raw = (exif_dict.get("Exif") or {}).get(piexif.ExifIFD.DateTimeOriginal)
    if not raw:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("ascii", errors="replace")
    return dt.datetime.strptime(raw.strip("\x00 "), EXIF_DATETIME_FORMAT)


def capture_time_to_utc(naive: dt.datetime, camera_tz: dt.tzinfo) -> dt.datetime:
    if hasattr(camera_tz, "localize"):
        aware = camera_tz.localize(naive)
    else:
        aware = naive.replace(tzinfo=camera_tz)
    return aware.astimezone(dt.timezone.utc)


def write_gps(exif_dict: dict, latitude_e7: int, longitude_e7: int) -> None:
    """Store fixed-point coordinates as EXIF degree/minute/second rationals."""

    def _e7_to_dms_rational(value_e7: int):
        # abs(value_e7) * 36 is the angle in units of 1e-5 arc seconds
        units = abs(value_e7) * 36
        deg, rest = divmod(units, 3600 * 100_000)
        minutes, seconds = divmod(rest, 60 * 100_000)
        return [
            (deg, 1),
            (minutes, 1),
            (seconds, 100_000),
        ]

    gps_ifd = exif_dict.setdefault("GPS", {})

    gps_ifd[piexif.GPSIFD.GPSVersionID] = (2, 2, 0, 0)
    gps_ifd[piexif.GPSIFD.GPSLatitudeRef] = b"N" if latitude_e7 >= 0 else b"S"
    gps_ifd[piexif.GPSIFD.GPSLatitude] = _e7_to_dms_rational(latitude_e7)
    gps_ifd[piexif.GPSIFD.GPSLongitudeRef] = b"E" if longitude_e7 >= 0 else b"W"
    gps_ifd[piexif.GPSIFD.GPSLongitude] = _e7_to_dms_rational(longitude_e7)


def backup_photo(filepath: pathlib.Path) -> pathlib.Path:
    """Copy *filepath* to ``<name>.bak``; an existing backup is never overwritten."""
    backup_path = filepath.with_suffix(filepath.suffix + BACKUP_SUFFIX)
    if not backup_path.exists():
        shutil.copy2(filepath, backup_path)
    return backup_path


def prepare_update(
    filepath: pathlib.Path,
    index: LocationIndex,
    tolerance: dt.timedelta,
    camera_tz: dt.tzinfo,
    summary: RunSummary,
) -> PendingUpdate | None:
    """Read *filepath* and stage its GPS tags, or record why it is skipped."""
    try:
        exif_dict = piexif.load(str(filepath))
    except Exception as exc:
        LOGGER.warning("Skipping %s because its metadata could not be read: %s", filepath, exc)
        summary.unreadable += 1
        return None

    if has_gps(exif_dict):
        LOGGER.debug("Skipping %s because it already has GPS metadata", filepath)
        summary.gps_already_set += 1
        return None

    try:
        naive = read_capture_time(exif_dict)
    except ValueError as exc:
        LOGGER.warning("Skipping %s because we couldn't parse the time the photo was taken: %s", filepath, exc)
        summary.no_datetime += 1
        return None
    if naive is None:
        LOGGER.warning("Skipping %s because it has no DateTimeOriginal", filepath)
        summary.no_datetime += 1
        return None

    capture_time = capture_time_to_utc(naive, camera_tz)
    sample = find_nearest(index, capture_time, tolerance)
    if sample is None:
        LOGGER.warning("No location found within %s for %s", tolerance, filepath)
        summary.no_location += 1
        return None

    LOGGER.debug(
        "Found location for %s: %.7f, %.7f (%s away)",
        filepath,
        sample.latitude,
        sample.longitude,
        abs(sample.timestamp - capture_time),
    )
    write_gps(exif_dict, sample.latitude_e7, sample.longitude_e7)
    return PendingUpdate(filepath, exif_dict, sample, capture_time)


def apply_updates(pending: List[PendingUpdate], summary: RunSummary, *, backup: bool = True) -> None:
    for update in pending:
        if backup:
            try:
                backup_photo(update.path)
            except OSError as exc:
                LOGGER.warning("Skipping %s because we couldn't back it up: %s", update.path, exc)
                summary.backup_failed += 1
                continue
        else:
            LOGGER.debug("Skipping backup of %s", update.path)

        try:
            piexif.insert(piexif.dump(update.exif_dict), str(update.path))
        except Exception as exc:
            LOGGER.warning("Error when writing metadata for %s: %s", update.path, exc)
            summary.write_failed += 1
            continue
        summary.updated += 1


def request_confirmation(stream: IO[str] | None = None) -> bool:
    """Read one answer line; only ``y``/``yes`` confirm."""
    stream = stream if stream is not None else sys.stdin
    response = stream.readline().strip().lower()
    return response in ("y", "yes")


# ---------------------------------------------------------------------------
# CLI entry-point
# ---------------------------------------------------------------------------


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="takeout-location-fixer",
        description="Add GPS coordinates from a Google Takeout location history to photos that lack them.",
    )
    parser.add_argument("-f", "--location-file", type=pathlib.Path, required=True, help="Path to Records.json")
    parser.add_argument("-d", "--photos-directory", type=pathlib.Path, required=True, help="Directory containing JPEGs (searched recursively)")
    parser.add_argument("-t", "--tolerance", type=parse_duration, default=dt.timedelta(hours=1), help="Maximum allowed difference between photo & location sample, e.g. 1h, 30m, 1h30m30s (default 1h)")
    parser.add_argument("--camera-tz", type=_timezone, default=pytz.utc, help="IANA timezone the camera clock was set to (default: UTC)")
    parser.add_argument("--skip-backup", action="store_true", help="Do not write a .bak copy before modifying a photo.")
    parser.add_argument("-y", "--skip-prompt", action="store_true", help="Do not ask for confirmation before modifying photos.")
    parser.add_argument("--dry-run", action="store_true", help="Only report what would change; no files are modified.")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(levelname)s:%(message)s")

    try:
        index = load_locations(args.location_file)
    except MalformedInput as exc:
        LOGGER.error("Could not load locations: %s", exc)
        return 1
    if not index:
        LOGGER.error("No locations found in %s – exiting.", args.location_file)
        return 1

    photo_paths, unsupported = find_photos(args.photos_directory)
    LOGGER.info("Found:")
    LOGGER.info("\tUnsupported extensions: %s", dict(unsupported))
    LOGGER.info("\tFiles to process: %s", len(photo_paths))
    if not photo_paths:
        LOGGER.error("No JPEGs found in %s", args.photos_directory)
        return 1

    summary = RunSummary(files_found=len(photo_paths))
    pending: List[PendingUpdate] = []
    for photo in photo_paths:
        try:
            update = prepare_update(photo, index, args.tolerance, args.camera_tz, summary)
        except Exception as exc:
            LOGGER.warning("Failed to process %s: %s", photo, exc)
            summary.unreadable += 1
            continue
        if update is not None:
            pending.append(update)

    if args.dry_run:
        for update in pending:
            LOGGER.info(
                "[dry-run] Would update %s (lat=%.7f, lon=%.7f)",
                update.path,
                update.sample.latitude,
                update.sample.longitude,
            )
        summary.log()
        LOGGER.info("Dry-run complete. %s photos WOULD be updated.", len(pending))
        return 0

    if not pending:
        summary.log()
        LOGGER.info("Nothing to update.")
        return 0

    if not args.skip_prompt:
        LOGGER.info("%s files will be modified. Do you wish to proceed? (Yes/No)", len(pending))
        if not request_confirmation():
            LOGGER.info("Aborting.")
            return 0
    else:
        LOGGER.info("Skipping confirmation prompt.")

    LOGGER.info("Starting the exif rewrite operation")
    apply_updates(pending, summary, backup=not args.skip_backup)
    LOGGER.info("Finished the exif rewrite operation")
    summary.log()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
