#!/usr/bin/env python3
# Kanachu bus-approach proxy for the Machida stop board.

from collections import deque
from dataclasses import dataclass, field
import logging
import os
import threading
import time
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Protocol, Tuple

from dotenv import load_dotenv
from flask import Flask, jsonify, make_response, request, Response
import requests

from arrivals_parser import MAX_ARRIVALS, extract, finalize

load_dotenv()

log = logging.getLogger("machida_bus")
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


def env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_csv(name: str, default: str) -> List[str]:
    value = os.getenv(name, default)
    return [item.strip() for item in value.split(",") if item.strip()]


# Stops on the way to Machida station.
DEFAULT_STOP_CODES = (
    "machiko_kougyoumae_toward_machida=22264,"
    "kamijuku_toward_machida=22011,"
    "tadao_park_toward_machida=22041,"
    "ja_tadao_branch_toward_machida=22280"
)


def parse_stop_codes(pairs: Iterable[str]) -> Dict[str, int]:
    codes: Dict[str, int] = {}
    for pair in pairs:
        stop_id, sep, code = pair.partition("=")
        stop_id, code = stop_id.strip(), code.strip()
        if not sep or not stop_id or not code.isdigit():
            log.warning("Ignoring malformed STOP_CODES entry: %r", pair)
            continue
        codes[stop_id] = int(code)
    return codes


UPSTREAM_BASE = os.getenv("UPSTREAM_BASE_URL", "https://real.kanachu.jp").rstrip("/")
UPSTREAM_APPROACH_URL = f"{UPSTREAM_BASE}/sp/DisplayApproachFrom"
UPSTREAM_PAGE = "2"
UPSTREAM_USER_AGENT = os.getenv(
    "UPSTREAM_USER_AGENT", "Mozilla/5.0 (compatible; machida-bus/1.0)"
)
UPSTREAM_CONNECT_TIMEOUT_SEC = env_float("UPSTREAM_CONNECT_TIMEOUT_SEC", 3.0)
UPSTREAM_READ_TIMEOUT_SEC = env_float("UPSTREAM_READ_TIMEOUT_SEC", 7.0)

STOP_CODES = parse_stop_codes(env_csv("STOP_CODES", DEFAULT_STOP_CODES))

CORS_ALLOWED_ORIGINS = set(
    env_csv(
        "CORS_ALLOWED_ORIGINS",
        "http://127.0.0.1,http://localhost,http://127.0.0.1:8000,http://localhost:8000",
    )
)
if env_bool("CORS_ALLOW_NULL_ORIGIN", False):
    CORS_ALLOWED_ORIGINS.add("null")

TRUST_PROXY_HEADERS = env_bool("TRUST_PROXY_HEADERS", False)

RATE_LIMIT_WINDOW_SEC = env_int("RATE_LIMIT_WINDOW_SEC", 60)
API_RATE_LIMIT_PER_MIN = env_int("API_RATE_LIMIT_PER_MIN", 60)
UPSTREAM_OUTBOUND_RATE_LIMIT_PER_MIN = env_int("UPSTREAM_OUTBOUND_RATE_LIMIT_PER_MIN", 60)

FETCH_DELAY_SEC = env_float("FETCH_DELAY_SEC", 0.5)
FETCH_DELAY_MAX_SEC = env_float("FETCH_DELAY_MAX_SEC", 5.0)

ARRIVALS_CACHE_TTL_SEC = env_int("ARRIVALS_CACHE_TTL_SEC", 15)
ARRIVALS_MAX_RETURNED = env_int("ARRIVALS_MAX_RETURNED", MAX_ARRIVALS)
MAX_CACHE = env_int("MAX_CACHE", 2000)

APP_HOST = os.getenv("APP_HOST", "127.0.0.1")
APP_PORT = env_int("APP_PORT", 5010)

JsonDict = Dict[str, Any]
StopResult = Any  # list of arrival dicts or {"error": code}

UNKNOWN_STOP_ID = "unknown_stop_id"
FETCH_FAILED = "fetch_failed"


@dataclass(frozen=True)
class CachedResponse:
    body: bytes
    headers: Tuple[Tuple[str, str], ...]
    status: int = 200
    created_at: float = field(default_factory=time.monotonic, compare=False)


class OutboundRateLimited(Exception):
    def __init__(self, retry_after: Optional[int]):
        super().__init__("outbound rate limited")
        self.retry_after = retry_after


class UpstreamError(Exception):
    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status


class CacheStore(Protocol):
    def get(self, key: str) -> Optional[CachedResponse]:
        ...

    def put(self, key: str, value: CachedResponse, ttl_sec: int) -> None:
        ...


class MemoryCacheStore:
    def __init__(self, max_entries: int, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: Dict[str, Tuple[CachedResponse, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[CachedResponse]:
        now = self._clock()
        with self._lock:
            hit = self._entries.get(key)
            if hit is None:
                return None
            value, expires_at = hit
            if expires_at <= now:
                self._entries.pop(key, None)
                return None
            return value

    def put(self, key: str, value: CachedResponse, ttl_sec: int) -> None:
        if ttl_sec <= 0:
            return
        now = self._clock()
        with self._lock:
            self._prune(now)
            self._entries[key] = (value, now + ttl_sec)

    # Bounds protect memory when many distinct stop_ids combinations arrive.
    def _prune(self, now: float) -> None:
        expired = [key for key, (_, exp) in self._entries.items() if exp <= now]
        for key in expired:
            self._entries.pop(key, None)
        if len(self._entries) >= self.max_entries:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


Spawner = Callable[..., None]


def spawn_thread(target: Callable[..., None], *args: Any) -> None:
    threading.Thread(target=target, args=args, daemon=True).start()


# On a miss the fresh response is returned first and stored in the background.
class ResponseCacheGate:
    def __init__(self, store: CacheStore, spawn: Spawner, ttl_sec: int) -> None:
        self.store = store
        self.spawn = spawn
        self.ttl_sec = ttl_sec

    def handle(self, identity: str, build: Callable[[], CachedResponse]) -> CachedResponse:
        try:
            cached = self.store.get(identity)
        except Exception as exc:
            log.warning("Cache lookup failed for %s: %s", identity, exc)
            cached = None
        if cached is not None:
            log.debug("Cache hit: %s", identity)
            return cached

        log.debug("Cache miss: %s", identity)
        fresh = build()
        try:
            self.spawn(self._store_quietly, identity, fresh)
        except Exception as exc:
            log.warning("Cache write could not be scheduled for %s: %s", identity, exc)
        return fresh

    def _store_quietly(self, identity: str, value: CachedResponse) -> None:
        try:
            self.store.put(identity, value, self.ttl_sec)
        except Exception as exc:
            log.warning("Cache write failed for %s: %s", identity, exc)


class SlidingWindowLimiter:
    def __init__(self, limit: int, window_sec: int) -> None:
        self.limit = max(1, limit)
        self.window_sec = max(1, window_sec)
        self._events: Deque[float] = deque()
        self._lock = threading.Lock()

    def allow(self) -> Tuple[bool, int]:
        now = time.monotonic()
        with self._lock:
            while self._events and self._events[0] <= now - self.window_sec:
                self._events.popleft()
            if len(self._events) >= self.limit:
                retry_after = int(self.window_sec - (now - self._events[0]))
                return False, max(1, retry_after)
            self._events.append(now)
            return True, 0


class PerKeyLimiter:
    def __init__(self, limit: int, window_sec: int) -> None:
        self.limit = max(1, limit)
        self.window_sec = max(1, window_sec)
        self._events: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def allow(self, key: str) -> Tuple[bool, int]:
        now = time.monotonic()
        with self._lock:
            events = self._events.setdefault(key, deque())
            while events and events[0] <= now - self.window_sec:
                events.popleft()
            if len(events) >= self.limit:
                retry_after = int(self.window_sec - (now - events[0]))
                return False, max(1, retry_after)
            events.append(now)
            return True, 0


# Pause between successive upstream retrievals. Zero disables it.
class CourtesyDelay:
    def __init__(
        self,
        seconds: float,
        max_seconds: float,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.seconds = min(max(0.0, seconds), max(0.0, max_seconds))
        self._sleep = sleep

    def __call__(self) -> None:
        if self.seconds > 0:
            self._sleep(self.seconds)


response_cache = MemoryCacheStore(MAX_CACHE)
cache_gate = ResponseCacheGate(response_cache, spawn_thread, ARRIVALS_CACHE_TTL_SEC)
courtesy_delay = CourtesyDelay(FETCH_DELAY_SEC, FETCH_DELAY_MAX_SEC)

api_limiter = PerKeyLimiter(API_RATE_LIMIT_PER_MIN, RATE_LIMIT_WINDOW_SEC)
upstream_limiter = SlidingWindowLimiter(UPSTREAM_OUTBOUND_RATE_LIMIT_PER_MIN, RATE_LIMIT_WINDOW_SEC)

app = Flask(__name__)
app.json.sort_keys = False
app.json.ensure_ascii = False
session = requests.Session()


def get_client_ip() -> str:
    if TRUST_PROXY_HEADERS:
        forwarded_for = request.headers.get("X-Forwarded-For", "")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
    return request.remote_addr or "unknown"


def parse_stop_ids(raw: Optional[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for item in (raw or "").split(","):
        item = item.strip()
        if item:
            seen.setdefault(item, None)
    return list(seen)


def resolve_stop_code(stop_id: str) -> Optional[int]:
    return STOP_CODES.get(stop_id)


def fetch_markup(code: int) -> str:
    allowed, retry_after = upstream_limiter.allow()
    if not allowed:
        raise OutboundRateLimited(retry_after)

    try:
        resp = session.get(
            UPSTREAM_APPROACH_URL,
            params={"fNO": str(code), "pNO": UPSTREAM_PAGE},
            headers={"User-Agent": UPSTREAM_USER_AGENT},
            timeout=(UPSTREAM_CONNECT_TIMEOUT_SEC, UPSTREAM_READ_TIMEOUT_SEC),
        )
        if resp.status_code >= 400:
            log.warning("Upstream returned %s for fNO=%s", resp.status_code, code)
        # requests falls back to ISO-8859-1 for text/html without a charset.
        if "charset" not in resp.headers.get("Content-Type", "").lower():
            resp.encoding = resp.apparent_encoding
        return resp.text
    except requests.RequestException as exc:
        raise UpstreamError(504, "upstream request failed") from exc


def resolve_and_fetch(
    stop_ids: Iterable[str],
    *,
    resolver: Callable[[str], Optional[int]],
    fetcher: Callable[[int], str],
    delay: Callable[[], None],
    limit: int = MAX_ARRIVALS,
) -> Dict[str, StopResult]:
    out: Dict[str, StopResult] = {}
    fetched_any = False

    for stop_id in stop_ids:
        if stop_id in out:
            continue
        code = resolver(stop_id)
        if code is None:
            out[stop_id] = {"error": UNKNOWN_STOP_ID}
            continue

        if fetched_any:
            delay()
        fetched_any = True

        try:
            markup = fetcher(code)
        except (UpstreamError, OutboundRateLimited) as exc:
            log.warning("Fetch failed for %s (fNO=%s): %s", stop_id, code, exc)
            out[stop_id] = {"error": FETCH_FAILED}
            continue
        except Exception:
            log.exception("Unexpected fetch error for %s (fNO=%s)", stop_id, code)
            out[stop_id] = {"error": FETCH_FAILED}
            continue

        out[stop_id] = [record.to_json() for record in finalize(extract(markup), limit)]

    return out


def build_arrivals_response(stop_ids: List[str]) -> CachedResponse:
    results = resolve_and_fetch(
        stop_ids,
        resolver=resolve_stop_code,
        fetcher=fetch_markup,
        delay=courtesy_delay,
        limit=ARRIVALS_MAX_RETURNED,
    )
    ttl_sec = cache_gate.ttl_sec
    return CachedResponse(
        body=jsonify(results).get_data(),
        headers=(
            ("Content-Type", "application/json; charset=utf-8"),
            ("Cache-Control", f"max-age={ttl_sec}"),
            ("X-Cache-Ttl-Seconds", str(ttl_sec)),
        ),
    )


# A replayed entry advertises only the freshness it has left.
def to_response(cached: CachedResponse, now: Optional[float] = None) -> Response:
    resp = make_response(cached.body, cached.status)
    for name, value in cached.headers:
        resp.headers[name] = value
    age = int((time.monotonic() if now is None else now) - cached.created_at)
    if age > 0:
        remaining = max(0, cache_gate.ttl_sec - age)
        resp.headers["Age"] = str(age)
        resp.headers["Cache-Control"] = f"max-age={remaining}"
        resp.headers["X-Cache-Ttl-Seconds"] = str(remaining)
    return resp


def error_response(
    status: int,
    code: str,
    message: str,
    *,
    retry_after: Optional[int] = None,
) -> Response:
    resp = jsonify({"error": {"code": code, "message": message}})
    resp.status_code = status
    resp.headers["Cache-Control"] = "no-store"
    if retry_after is not None:
        resp.headers["Retry-After"] = str(retry_after)
    return resp


@app.before_request
def apply_rate_limit() -> Optional[Response]:
    if not request.path.startswith("/api/"):
        return None
    if request.method == "OPTIONS":
        return make_response("", 204)
    client_ip = get_client_ip()
    allowed, retry_after = api_limiter.allow(client_ip)
    if not allowed:
        return error_response(429, "rate_limited", "Too many requests", retry_after=retry_after)
    return None


@app.after_request
def add_common_headers(resp: Response) -> Response:
    origin = request.headers.get("Origin")
    if origin and origin in CORS_ALLOWED_ORIGINS:
        resp.headers["Access-Control-Allow-Origin"] = origin
        resp.headers["Vary"] = "Origin"
        resp.headers["Access-Control-Allow-Methods"] = "GET, OPTIONS"
        resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
        resp.headers["Access-Control-Expose-Headers"] = (
            "Cache-Control, Age, Retry-After, X-Cache-Ttl-Seconds"
        )
        resp.headers["Access-Control-Max-Age"] = "600"

    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers.setdefault("Referrer-Policy", "no-referrer")
    resp.headers.setdefault("X-Frame-Options", "DENY")
    return resp


@app.route("/api/arrivals", methods=["GET", "OPTIONS"])
def arrivals() -> Response:
    if request.method == "OPTIONS":
        return make_response("", 204)

    stop_ids = parse_stop_ids(request.args.get("stop_ids"))
    cached = cache_gate.handle(request.full_path, lambda: build_arrivals_response(stop_ids))
    return to_response(cached)


@app.route("/api/stops", methods=["GET", "OPTIONS"])
def stops() -> Response:
    if request.method == "OPTIONS":
        return make_response("", 204)

    payload = {"stops": [{"id": stop_id, "code": code} for stop_id, code in STOP_CODES.items()]}
    return jsonify(payload)


if __name__ == "__main__":
    app.run(host=APP_HOST, port=APP_PORT)
