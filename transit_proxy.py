#!/usr/bin/env python3
# HERE Transit proxy with short-lived caching and local extra departures.

import copy
from dataclasses import dataclass
from decimal import Decimal
import json
import logging
import math
import os
from pathlib import Path
import re
import threading
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, TypedDict, cast

from dotenv import load_dotenv
from flask import Flask, jsonify, make_response, request, Response
import requests

load_dotenv()

log = logging.getLogger("transit_proxy")
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def env_csv(name: str, default: str) -> List[str]:
    value = os.getenv(name, default)
    return [item.strip() for item in value.split(",") if item.strip()]


HERE_BASE = os.getenv("HERE_BASE_URL", "https://transit.hereapi.com/v8").rstrip("/")
HERE_API_KEY = os.getenv("HERE_API_KEY") or None

HERE_CONNECT_TIMEOUT_SEC = env_float("HERE_CONNECT_TIMEOUT_SEC", 3.0)
HERE_READ_TIMEOUT_SEC = env_float("HERE_READ_TIMEOUT_SEC", 10.0)

CACHE_DURATION_SEC = env_float("CACHE_DURATION_SEC", 120.0)
CACHE_PURGE_INTERVAL_SEC = env_float("CACHE_PURGE_INTERVAL_SEC", 300.0)
DEFAULT_RADIUS_M = env_int("DEFAULT_RADIUS_M", 1000)

# ~111 m of latitude
COORD_PRECISION = 0.001
COORDINATE_RE = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")

EXTRA_DEPARTURES_PATH = os.getenv(
    "EXTRA_DEPARTURES_PATH", str(Path(__file__).with_name("extra_departures.json"))
)

CORS_ALLOWED_ORIGINS = set(env_csv("CORS_ALLOWED_ORIGINS", "*"))

APP_HOST = os.getenv("APP_HOST", "0.0.0.0")
APP_PORT = env_int("APP_PORT", env_int("PORT", 3000))

JsonDict = Dict[str, Any]


class Place(TypedDict, total=False):
    name: str


class Board(TypedDict, total=False):
    place: Place
    departures: List[JsonDict]


class ExtraBoard(TypedDict):
    place: Place
    departures: List[JsonDict]


class DeparturesResponse(TypedDict, total=False):
    boards: List[Board]


@dataclass(frozen=True)
class CacheEntry:
    payload: Any
    timestamp: float


class UpstreamError(Exception):
    def __init__(self, status: int, message: str, details: Any = None):
        super().__init__(message)
        self.status = status
        self.details = details if details is not None else message


class MissingConfig(Exception):
    def __init__(self, message: str):
        super().__init__(message)


class InvalidParameter(Exception):
    def __init__(self, message: str):
        super().__init__(message)


class TimedCache:
    """In-memory map whose entries are served only while younger than ``duration_sec``.

    Stale entries stay in the map until a later ``put`` overwrites them or a
    periodic purge drops them. Purging never changes what ``lookup`` returns.
    The lock only guards the map: concurrent misses for one key both fetch
    upstream and the last write wins.
    """

    def __init__(
        self,
        duration_sec: float,
        *,
        purge_interval_sec: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.duration_sec = duration_sec
        self.purge_interval_sec = purge_interval_sec
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._last_purge = clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def lookup(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.timestamp >= self.duration_sec:
            return None
        return entry

    def get(self, key: str) -> Any:
        entry = self.lookup(key)
        return entry.payload if entry is not None else None

    def put(self, key: str, payload: Any) -> CacheEntry:
        now = self._clock()
        with self._lock:
            if (
                self.purge_interval_sec is not None
                and now - self._last_purge >= self.purge_interval_sec
            ):
                self._purge_locked(now)
            entry = CacheEntry(payload=payload, timestamp=now)
            self._entries[key] = entry
        return entry

    def remaining_sec(self, entry: CacheEntry) -> int:
        return max(0, int(self.duration_sec - (self._clock() - entry.timestamp)))

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            return self._purge_locked(now)

    def _purge_locked(self, now: float) -> int:
        self._last_purge = now
        expired = [
            key
            for key, entry in self._entries.items()
            if now - entry.timestamp >= self.duration_sec
        ]
        for key in expired:
            del self._entries[key]
        if expired:
            log.debug("Purged %d expired cache entries", len(expired))
        return len(expired)


def round_coordinate(value: float) -> str:
    # Half-up onto the 0.001 degree grid. math.floor returns an int, so no -0.0.
    rounded = math.floor(value / COORD_PRECISION + 0.5) * COORD_PRECISION
    return f"{rounded:.3f}"


def station_cache_key(lat: float, lon: float, radius: int = DEFAULT_RADIUS_M) -> str:
    return f"{round_coordinate(lat)},{round_coordinate(lon)},{radius}"


def _valid_extra_board(board: Any) -> bool:
    if not isinstance(board, dict):
        return False
    place = board.get("place")
    if not isinstance(place, dict) or not isinstance(place.get("name"), str):
        return False
    return isinstance(board.get("departures"), list)


def load_extra_boards(path: str) -> List[ExtraBoard]:
    """Read the supplemental ``{"boards": [...]}`` file.

    Any failure degrades to an empty list so the merge step becomes a no-op.
    """
    try:
        with open(path, encoding="utf-8") as handle:
            raw = json.load(handle)
    except (OSError, ValueError) as exc:
        log.warning("Could not load extra departures from %s: %s", path, exc)
        return []

    boards = raw.get("boards") if isinstance(raw, dict) else None
    if not isinstance(boards, list):
        log.warning("Extra departures file %s has no 'boards' list", path)
        return []

    valid = [cast(ExtraBoard, board) for board in boards if _valid_extra_board(board)]
    if len(valid) != len(boards):
        log.warning("Skipped %d malformed extra boards in %s", len(boards) - len(valid), path)
    log.info("Loaded %d extra boards from %s", len(valid), path)
    return valid


def find_extra_board(name: str, extra_boards: List[ExtraBoard]) -> Optional[ExtraBoard]:
    # First match wins when the dataset repeats a place name.
    for extra in extra_boards:
        if extra["place"]["name"] == name:
            return extra
    return None


def merge_extra_departures(response: Any, extra_boards: List[ExtraBoard]) -> Any:
    """Append matching extra departures to each upstream board, in place."""
    if not extra_boards or not isinstance(response, dict):
        return response
    boards = response.get("boards")
    if not isinstance(boards, list):
        return response

    for board in cast(List[Board], boards):
        if not isinstance(board, dict):
            continue
        place = board.get("place")
        name = place.get("name") if isinstance(place, dict) else None
        if not isinstance(name, str):
            continue
        extra = find_extra_board(name, extra_boards)
        if extra is None:
            continue
        departures = board.get("departures")
        if not isinstance(departures, list):
            departures = []
            board["departures"] = departures
        departures.extend(copy.deepcopy(extra["departures"]))
    return response


station_cache = TimedCache(CACHE_DURATION_SEC, purge_interval_sec=CACHE_PURGE_INTERVAL_SEC)
departures_cache = TimedCache(CACHE_DURATION_SEC, purge_interval_sec=CACHE_PURGE_INTERVAL_SEC)

extra_boards: List[ExtraBoard] = load_extra_boards(EXTRA_DEPARTURES_PATH)

if HERE_API_KEY is None:
    log.warning("HERE_API_KEY not set; upstream requests will fail")

app = Flask(__name__)
session = requests.Session()


def redact(text: str) -> str:
    if HERE_API_KEY:
        return text.replace(HERE_API_KEY, "***")
    return text


def upstream_error_details(resp: requests.Response) -> Any:
    text = resp.text or ""
    if HERE_API_KEY and HERE_API_KEY in text:
        return redact(text)
    try:
        return resp.json()
    except ValueError:
        return text or resp.reason or f"HTTP {resp.status_code}"


def request_json(
    url: str,
    *,
    params: Optional[Mapping[str, Any]] = None,
    timeout: Optional[Tuple[float, float]] = None,
    service_name: str = "upstream",
) -> Any:
    try:
        resp = session.get(
            url,
            params=params,
            timeout=timeout,
            headers={"Accept": "application/json"},
        )
    except requests.RequestException as exc:
        raise UpstreamError(504, f"{service_name} request failed", redact(str(exc))) from exc

    if resp.status_code >= 400:
        raise UpstreamError(
            resp.status_code, f"{service_name} upstream error", upstream_error_details(resp)
        )

    try:
        return resp.json()
    except ValueError as exc:
        raise UpstreamError(502, f"{service_name} invalid JSON", "invalid JSON") from exc


def here_get_json(path: str, params: Mapping[str, Any]) -> Any:
    if HERE_API_KEY is None:
        raise MissingConfig("HERE_API_KEY not set")
    query = dict(params)
    query["apiKey"] = HERE_API_KEY
    return request_json(
        f"{HERE_BASE}{path}",
        params=query,
        timeout=(HERE_CONNECT_TIMEOUT_SEC, HERE_READ_TIMEOUT_SEC),
        service_name="HERE",
    )


def format_coordinate(value: float) -> str:
    # Plain decimal notation: no exponent, no "-0.0", no trailing ".0".
    if value == 0:
        return "0"
    text = repr(value)
    if "e" in text:
        text = format(Decimal(text), "f")
    if text.endswith(".0"):
        text = text[:-2]
    return text


def fetch_stations(lat: float, lon: float, radius: int) -> Any:
    return here_get_json(
        "/stations",
        {
            "in": f"{format_coordinate(lat)},{format_coordinate(lon)}",
            "radius": radius,
            "return": "transport",
        },
    )


def fetch_departures(station_id: str) -> DeparturesResponse:
    return cast(DeparturesResponse, here_get_json("/departures", {"ids": station_id}))


def parse_coordinate(args: Mapping[str, str], name: str) -> float:
    raw = args[name]
    if not COORDINATE_RE.fullmatch(raw):
        raise InvalidParameter(f"{name} must be a number")
    value = float(raw)
    if not math.isfinite(value):
        raise InvalidParameter(f"{name} must be a number")
    return value


def parse_station_query(args: Mapping[str, str]) -> Tuple[float, float, int]:
    if not args.get("latitude") or not args.get("longitude"):
        raise InvalidParameter("latitude and longitude parameters are required")
    lat = parse_coordinate(args, "latitude")
    lon = parse_coordinate(args, "longitude")

    raw_radius = args.get("radius")
    if not raw_radius:
        return lat, lon, DEFAULT_RADIUS_M
    try:
        radius = int(raw_radius)
    except ValueError:
        raise InvalidParameter("radius must be a positive integer") from None
    if radius <= 0:
        raise InvalidParameter("radius must be a positive integer")
    return lat, lon, radius


def error_response(status: int, error: str, details: Any = None) -> Response:
    payload: Dict[str, Any] = {"error": error}
    if details is not None:
        payload["details"] = details
    resp = jsonify(payload)
    resp.status_code = status
    resp.headers["Cache-Control"] = "no-store"
    return resp


def cached_response(cache: TimedCache, entry: CacheEntry, *, hit: bool) -> Response:
    resp = jsonify(entry.payload)
    resp.headers["Cache-Control"] = f"max-age={cache.remaining_sec(entry)}"
    resp.headers["X-Cache"] = "HIT" if hit else "MISS"
    return resp


def upstream_failure(error: str, exc: Exception) -> Response:
    if isinstance(exc, UpstreamError):
        log.error("%s: %s (status %s)", error, exc, exc.status)
        return error_response(500, error, exc.details)
    if isinstance(exc, MissingConfig):
        log.error("%s: %s", error, exc)
        return error_response(500, error, str(exc))
    log.exception("%s: unexpected error", error)
    return error_response(500, error, "Unexpected error")


@app.before_request
def handle_preflight() -> Optional[Response]:
    if request.method == "OPTIONS":
        return make_response("", 204)
    return None


@app.after_request
def add_common_headers(resp: Response) -> Response:
    origin = request.headers.get("Origin")
    allow_origin: Optional[str] = None
    if "*" in CORS_ALLOWED_ORIGINS:
        allow_origin = "*"
    elif origin and origin in CORS_ALLOWED_ORIGINS:
        allow_origin = origin
        resp.headers["Vary"] = "Origin"

    if allow_origin is not None:
        resp.headers["Access-Control-Allow-Origin"] = allow_origin
        resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        resp.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
        resp.headers["Access-Control-Expose-Headers"] = "Cache-Control, X-Cache"

    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers.setdefault("Referrer-Policy", "no-referrer")
    return resp


@app.route("/api/stations", methods=["GET"])
def stations() -> Response:
    try:
        lat, lon, radius = parse_station_query(request.args)
    except InvalidParameter as exc:
        return error_response(400, str(exc))

    cache_key = station_cache_key(lat, lon, radius)
    entry = station_cache.lookup(cache_key)
    if entry is not None:
        log.debug("Station cache hit for %s", cache_key)
        return cached_response(station_cache, entry, hit=True)

    log.debug("Station cache miss for %s", cache_key)
    try:
        entry = station_cache.put(cache_key, fetch_stations(lat, lon, radius))
        return cached_response(station_cache, entry, hit=False)
    except Exception as exc:
        return upstream_failure("Failed to fetch stations", exc)


@app.route("/api/departures", methods=["GET"])
def departures() -> Response:
    station_id = request.args.get("stationId")
    if not station_id:
        return error_response(400, "stationId parameter is required")

    entry = departures_cache.lookup(station_id)
    if entry is not None:
        log.debug("Departures cache hit for %s", station_id)
        return cached_response(departures_cache, entry, hit=True)

    log.debug("Departures cache miss for %s", station_id)
    try:
        payload = merge_extra_departures(fetch_departures(station_id), extra_boards)
        entry = departures_cache.put(station_id, payload)
        return cached_response(departures_cache, entry, hit=False)
    except Exception as exc:
        return upstream_failure("Failed to fetch departures", exc)


@app.route("/health", methods=["GET"])
def health() -> Response:
    return jsonify({"status": "OK", "message": "Server is running"})


@app.route("/", methods=["GET"])
def index() -> Response:
    return Response("OK", mimetype="text/plain")


if __name__ == "__main__":
    log.info("Starting transit proxy on %s:%d", APP_HOST, APP_PORT)
    app.run(host=APP_HOST, port=APP_PORT)
