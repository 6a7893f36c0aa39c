"""
Gold & Silver Rates API
A thin proxy over the GoldPriceZ API that normalizes its drifting payloads into
stable gold and silver prices per gram, troy ounce and kilogram.
"""

from fastapi import Depends, FastAPI, Query
from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from typing import Any, Callable, NamedTuple, Optional, Union
from contextlib import asynccontextmanager
from dataclasses import dataclass
from urllib.parse import quote
from dotenv import load_dotenv
import httpx
import json
import math
import os
import logging
from bs4 import BeautifulSoup

load_dotenv()

# ══════════════════════════════════════════════════════════════════════════════
# Configuration
# ══════════════════════════════════════════════════════════════════════════════

SOURCE_NAME = "GoldPriceZ.com"
DEFAULT_CURRENCY = "usd"
DEFAULT_GRAM_TO_OUNCE = 0.0321507  # troy ounces per gram (1 ozt = 31.1035 g)
GRAMS_PER_KG = 1000
MAX_FLATTEN_DEPTH = 200  # containers + JSON-string decodes combined
DIAGNOSTIC_KEY_LIMIT = 50
UPSTREAM_DETAILS_LIMIT = 1000  # chars of upstream error body echoed to callers
TIMESTAMP_KEY_HINTS = ("gmt", "updated", "time")

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)


class Settings:
    """Runtime configuration, read from the environment (and .env) at construction."""

    def __init__(self):
        self.goldpricez_api_key: Optional[str] = os.getenv("GOLDPRICEZ_API_KEY") or None
        self.goldpricez_base_url: str = os.getenv(
            "GOLDPRICEZ_BASE_URL", "https://goldpricez.com/api/rates"
        ).rstrip("/")
        self.cors_origin: str = os.getenv("CORS_ORIGIN", "http://localhost:3000")
        self.host: str = os.getenv("HOST", "0.0.0.0")
        self.port: int = int(os.getenv("PORT", "4000"))


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


# Shared HTTP client, reused across requests for connection pooling
_http_client: Optional[httpx.AsyncClient] = None

async def get_http_client() -> httpx.AsyncClient:
    """Get or create the shared upstream HTTP client."""
    global _http_client
    if _http_client is None:
        _http_client = httpx.AsyncClient(follow_redirects=True)
    return _http_client


async def close_http_client():
    global _http_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None

# ══════════════════════════════════════════════════════════════════════════════
# Models
# ══════════════════════════════════════════════════════════════════════════════

RawLeaf = Union[str, int, float, bool, None]


@dataclass(frozen=True)
class FlatEntry:
    """One leaf of a flattened payload: `path` from the root, terminal `key`, raw `value`."""
    path: str
    key: str
    value: RawLeaf


@dataclass(frozen=True)
class ExtractedRates:
    gold_per_gram: float
    silver_per_gram: float
    gram_to_ounce_factor: float


class MetalRates(BaseModel):
    per_gram: float = Field(alias="perGram")
    per_ounce: float = Field(alias="perOunce")
    per_kg: float = Field(alias="perKg")

    class Config:
        frozen = True
        populate_by_name = True


class RatesMeta(BaseModel):
    source: str = SOURCE_NAME
    updated: Optional[str] = None

    class Config:
        frozen = True


class RatesResponse(BaseModel):
    currency: str
    gold: MetalRates
    silver: MetalRates
    meta: RatesMeta

    class Config:
        frozen = True


class HealthResponse(BaseModel):
    status: str

# ══════════════════════════════════════════════════════════════════════════════
# Errors
# ══════════════════════════════════════════════════════════════════════════════

class RatesError(Exception):
    """Base for every failure that ends a /api/rates request."""

    status_code = 500
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        self.message = message or self.message

    def to_dict(self) -> dict:
        return {"error": self.message}


class ConfigurationError(RatesError):
    status_code = 500
    message = "Server not configured with GOLDPRICEZ_API_KEY"

    def to_dict(self) -> dict:
        return {"error": self.message, "hint": "Set GOLDPRICEZ_API_KEY in the server .env file"}


class NetworkError(RatesError):
    status_code = 502
    message = "Network error fetching GoldPriceZ"


class UpstreamStatusError(RatesError):
    status_code = 502
    message = "Failed to fetch data from GoldPriceZ"

    def __init__(self, status: int, details: str):
        super().__init__()
        self.status = status
        self.details = details[:UPSTREAM_DETAILS_LIMIT]

    def to_dict(self) -> dict:
        return {"error": self.message, "status": self.status, "details": self.details}


class ParseError(RatesError):
    status_code = 502
    message = "Invalid JSON from GoldPriceZ"


class ExtractionError(RatesError):
    status_code = 502
    message = "Unexpected response format from GoldPriceZ"

    def __init__(self, keys: list[str]):
        super().__init__()
        self.keys = keys

    def to_dict(self) -> dict:
        return {"error": self.message, "keys": self.keys}


class InternalError(RatesError):
    status_code = 500

# ══════════════════════════════════════════════════════════════════════════════
# Payload Flattening
# ══════════════════════════════════════════════════════════════════════════════

def _looks_like_json(text: str) -> bool:
    stripped = text.strip()
    return stripped.startswith("{") or stripped.startswith("[")


def flatten_payload(payload: Any) -> list[FlatEntry]:
    """
    Reduce an arbitrary JSON value to a depth-first list of leaf entries.

    Strings that hold JSON objects/arrays are decoded and traversed in place of
    the string leaf. Object members extend the path with `.key`, array items with
    `[i]`. Nesting and decodes share a single depth budget so double-encoded or
    adversarial payloads always terminate.
    """
    entries: list[FlatEntry] = []

    def visit(value: Any, path: str, key: str, depth: int):
        if depth > MAX_FLATTEN_DEPTH:
            logging.warning(f"Flatten depth limit ({MAX_FLATTEN_DEPTH}) reached at '{path}'; subtree skipped")
            return

        if isinstance(value, str) and _looks_like_json(value):
            try:
                decoded = json.loads(value)
            except (ValueError, RecursionError):
                decoded = value
            if decoded is not value:
                visit(decoded, path, key, depth + 1)
                return

        if isinstance(value, dict):
            for child_key, child in value.items():
                child_key = str(child_key)
                visit(child, f"{path}.{child_key}" if path else child_key, child_key, depth + 1)
        elif isinstance(value, list):
            for i, item in enumerate(value):
                visit(item, f"{path}[{i}]", f"{key}[{i}]", depth + 1)
        else:
            entries.append(FlatEntry(path=path, key=key, value=value))

    visit(payload, "", "", 0)
    return entries


def unwrap_payload(payload: Any) -> Any:
    """
    Normalize the upstream body's top level before flattening.

    A `data` wrapper is peeled off, and an array of fragments is merged into a
    single object (object items merged in order, scalars kept under their index).
    """
    if isinstance(payload, dict) and isinstance(payload.get("data"), (dict, list)):
        logging.info("Detected top-level `data` field; using payload inside it")
        payload = payload["data"]

    if isinstance(payload, list):
        logging.info("Upstream returned an array; merging entries into a single object")
        merged: dict = {}
        for idx, item in enumerate(payload):
            if isinstance(item, dict):
                merged.update(item)
            else:
                merged[str(idx)] = item
        if payload:
            logging.debug(f"Sample array[0]: {json.dumps(payload[0], default=str)[:500]}")
        payload = merged

    return payload


def top_level_keys(payload: Any, limit: int = DIAGNOSTIC_KEY_LIMIT) -> list[str]:
    if isinstance(payload, dict):
        return [str(k) for k in list(payload.keys())[:limit]]
    return []

# ══════════════════════════════════════════════════════════════════════════════
# Numeric Parsing
# ══════════════════════════════════════════════════════════════════════════════

def parse_number(value: Any) -> Optional[Union[int, float]]:
    """Return a finite number from a native number or numeric string, else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        try:
            return value if math.isfinite(float(value)) else None
        except OverflowError:
            return None
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        if not text or "_" in text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None

# ══════════════════════════════════════════════════════════════════════════════
# Rate Extraction
# ══════════════════════════════════════════════════════════════════════════════

Finder = Callable[[list[FlatEntry], str], Optional[float]]


class Strategy(NamedTuple):
    name: str
    gold: Finder
    silver: Finder


def _key(entry: FlatEntry) -> str:
    return entry.key.lower()


def _path(entry: FlatEntry) -> str:
    return entry.path.lower()


def _is_timestamp_key(entry: FlatEntry) -> bool:
    key = _key(entry)
    return any(hint in key for hint in TIMESTAMP_KEY_HINTS)


def _first_number(
    entries: list[FlatEntry],
    predicate: Callable[[FlatEntry], bool],
    accept: Callable[[float], bool] = lambda n: True,
) -> Optional[float]:
    """First numeric value, in traversal order, among entries matching `predicate`."""
    for entry in entries:
        if predicate(entry):
            number = parse_number(entry.value)
            if number is not None and accept(number):
                return number
    return None


def _key_contains(*parts: str) -> Callable[[FlatEntry], bool]:
    return lambda entry: all(part in _key(entry) for part in parts)


def _key_is(target: str) -> Callable[[FlatEntry], bool]:
    return lambda entry: _key(entry) == target or _path(entry).endswith(f".{target}")


def _ranked_numbers(entries: list[FlatEntry], currency: str, predicate: Callable[[FlatEntry], bool]) -> list[float]:
    """Numeric values of matching entries, largest first; USD-tagged keys dropped for other currencies."""
    numbers = []
    for entry in entries:
        if not predicate(entry):
            continue
        if currency != "usd" and "usd" in _key(entry):
            continue
        number = parse_number(entry.value)
        if number is not None:
            numbers.append(number)
    return sorted(numbers, reverse=True)


def _nth_largest(rank: int, predicate: Callable[[FlatEntry], bool]) -> Finder:
    def finder(entries: list[FlatEntry], currency: str) -> Optional[float]:
        ranked = _ranked_numbers(entries, currency, predicate)
        return ranked[rank] if len(ranked) > rank else None
    return finder


def _is_factor_key(entry: FlatEntry) -> bool:
    return "gram_to_ounce" in _key(entry)


def _is_gram_key(entry: FlatEntry) -> bool:
    return "gram" in _key(entry) and not _is_factor_key(entry)


def _is_price_like(entry: FlatEntry) -> bool:
    return not _is_timestamp_key(entry) and not _is_factor_key(entry)


# Evaluated in order, per metal, until that metal is resolved. The last two
# entries assume gold trades above silver per gram; that is a heuristic, not a
# guarantee, and they only run when nothing metal-specific was found.
EXTRACTION_STRATEGIES: list[Strategy] = [
    Strategy(
        "metal_and_gram",
        gold=lambda entries, cur: _first_number(entries, _key_contains("gold", "gram")),
        silver=lambda entries, cur: _first_number(entries, _key_contains("silver", "gram")),
    ),
    Strategy(
        "currency_scoped",
        gold=lambda entries, cur: _first_number(entries, _key_is(f"gram_in_{cur}")),
        silver=lambda entries, cur: _first_number(entries, _key_is(f"silver_gram_in_{cur}")),
    ),
    Strategy(
        "bare_key",
        gold=lambda entries, cur: _first_number(entries, lambda e: _key(e) == "gram"),
        silver=lambda entries, cur: _first_number(
            entries, lambda e: _key(e) == "silver" or "silver_gram" in _key(e)
        ),
    ),
    Strategy(
        "ticker",
        gold=lambda entries, cur: _first_number(entries, lambda e: "xau" in _key(e) or "xau" in _path(e)),
        silver=lambda entries, cur: _first_number(entries, lambda e: "xag" in _key(e) or "xag" in _path(e)),
    ),
    Strategy(
        "largest_gram_values",
        gold=_nth_largest(0, _is_gram_key),
        silver=_nth_largest(1, _is_gram_key),
    ),
    Strategy(
        "largest_numeric_values",
        gold=_nth_largest(0, _is_price_like),
        silver=_nth_largest(1, _is_price_like),
    ),
]


def _usable_factor(number: float) -> bool:
    return number != 0 and math.isfinite(number)


def resolve_gram_to_ounce(entries: list[FlatEntry], top_level: Any = None) -> float:
    """Gram-to-ounce factor: payload entry, then top-level formula fields, then the troy constant."""
    factor = _first_number(entries, _is_factor_key, accept=_usable_factor)
    if factor is not None:
        return factor

    if isinstance(top_level, dict):
        for field in ("gram_to_ounce_formula", "gram_to_ounce"):
            number = parse_number(top_level.get(field))
            if number is not None and _usable_factor(number):
                return number

    return DEFAULT_GRAM_TO_OUNCE


def _silver_ounce_price(entries: list[FlatEntry], currency: str) -> Optional[float]:
    exact = _first_number(entries, _key_is(f"silver_ounce_in_{currency}"))
    if exact is not None:
        return exact
    return _first_number(entries, _key_contains("silver_ounce", currency))


def _gold_ounce_price(entries: list[FlatEntry], currency: str) -> Optional[float]:
    exact = _first_number(entries, _key_is(f"ounce_in_{currency}"))
    if exact is not None:
        return exact

    def loose(entry: FlatEntry) -> bool:
        key = _key(entry)
        return (
            "ounce" in key
            and currency in key
            and "silver" not in key
            and not _is_factor_key(entry)
            and not _is_timestamp_key(entry)
        )

    return _first_number(entries, loose)


def extract_rates(entries: list[FlatEntry], currency: str, top_level: Any = None) -> ExtractedRates:
    """
    Resolve gold/silver per-gram prices and the gram-to-ounce factor.

    Runs EXTRACTION_STRATEGIES in order for each metal, then applies the
    per-ounce-in-currency conversion: it overrides heuristic matches for
    non-USD requests and only fills gaps for USD. Raises ExtractionError
    unless both prices are resolved.
    """
    currency = currency.lower()
    resolved: dict[str, Optional[float]] = {"gold": None, "silver": None}

    for strategy in EXTRACTION_STRATEGIES:
        for metal in ("gold", "silver"):
            if resolved[metal] is not None:
                continue
            finder = strategy.gold if metal == "gold" else strategy.silver
            value = finder(entries, currency)
            if value is not None:
                logging.debug(f"{metal} per gram resolved by '{strategy.name}': {value}")
                resolved[metal] = value
        if all(v is not None for v in resolved.values()):
            break

    factor = resolve_gram_to_ounce(entries, top_level)

    from_ounce = {
        "gold": _gold_ounce_price(entries, currency),
        "silver": _silver_ounce_price(entries, currency),
    }
    for metal, per_ounce in from_ounce.items():
        if per_ounce is None:
            continue
        per_gram = per_ounce * factor
        if currency != "usd":
            logging.debug(f"{metal} per gram taken from per-ounce {currency} price: {per_gram}")
            resolved[metal] = per_gram
        elif resolved[metal] is None:
            resolved[metal] = per_gram

    logging.info(
        f"Extracted goldPerGram={resolved['gold']} silverPerGram={resolved['silver']} gramToOunce={factor}"
    )

    if resolved["gold"] is None or resolved["silver"] is None:
        keys = top_level_keys(top_level)
        logging.error(f"Unable to extract gold/silver for currency={currency}; keys: {keys}")
        raise ExtractionError(keys)

    return ExtractedRates(
        gold_per_gram=resolved["gold"],
        silver_per_gram=resolved["silver"],
        gram_to_ounce_factor=factor,
    )

# ══════════════════════════════════════════════════════════════════════════════
# Unit Conversion & Response Building
# ══════════════════════════════════════════════════════════════════════════════

def convert_units(per_gram: float, gram_to_ounce_factor: float) -> MetalRates:
    """
    Derive per-ounce and per-kilogram prices from a per-gram price.

    1 gram = factor troy ounces, so ounce price = gram price / factor.
    """
    if not _usable_factor(gram_to_ounce_factor):
        raise ValueError(f"gram_to_ounce_factor must be finite and non-zero, got {gram_to_ounce_factor}")
    return MetalRates(
        per_gram=per_gram,
        per_ounce=per_gram / gram_to_ounce_factor,
        per_kg=per_gram * GRAMS_PER_KG,
    )


def _updated_marker(top_level: Any, currency: str) -> Optional[str]:
    if not isinstance(top_level, dict):
        return None
    for field in (f"gmt_{currency}_updated", "gmt_ounce_price_usd_updated"):
        value = top_level.get(field)
        if value not in (None, ""):
            return str(value)
    return None


def build_rates_response(currency: str, rates: ExtractedRates, top_level: Any = None) -> RatesResponse:
    return RatesResponse(
        currency=currency.upper(),
        gold=convert_units(rates.gold_per_gram, rates.gram_to_ounce_factor),
        silver=convert_units(rates.silver_per_gram, rates.gram_to_ounce_factor),
        meta=RatesMeta(source=SOURCE_NAME, updated=_updated_marker(top_level, currency.lower())),
    )


def normalize_payload(payload: Any, currency: str) -> RatesResponse:
    """Full pipeline over an already-parsed upstream body."""
    top_level = unwrap_payload(payload)
    logging.info(f"External API keys: {top_level_keys(top_level, 20)}")

    entries = flatten_payload(top_level)
    logging.debug(f"Sample flattened entries: {entries[:10]}")

    rates = extract_rates(entries, currency, top_level)
    return build_rates_response(currency, rates, top_level)

# ══════════════════════════════════════════════════════════════════════════════
# Upstream Fetching
# ══════════════════════════════════════════════════════════════════════════════

def summarize_body(text: str, limit: int = 300) -> str:
    """Short readable snippet of an upstream body; HTML error pages are reduced to text."""
    head = text[:1000].lower()
    if "<html" in head or "<body" in head or "<!doctype" in head:
        text = BeautifulSoup(text, "lxml").get_text(" ", strip=True)
    return text[:limit]


def build_upstream_url(base_url: str, currency: str) -> str:
    return f"{base_url}/currency/{quote(currency, safe='')}/measure/gram/metal/all"


async def fetch_upstream_payload(client: httpx.AsyncClient, settings: Settings, currency: str) -> Any:
    """
    Fetch and JSON-decode the GoldPriceZ rates payload for `currency`.

    Single attempt, no retry. Transport failures, non-2xx statuses and
    undecodable bodies are raised as NetworkError, UpstreamStatusError and
    ParseError respectively.
    """
    if not settings.goldpricez_api_key:
        logging.warning("GOLDPRICEZ_API_KEY not set in environment")
        raise ConfigurationError()

    url = build_upstream_url(settings.goldpricez_base_url, currency)
    logging.info(f"Fetching external API: {url}")

    try:
        response = await client.get(url, headers={"X-API-KEY": settings.goldpricez_api_key})
    except httpx.RequestError as e:
        logging.error(f"Network error while fetching GoldPriceZ for {currency}: {str(e)}")
        raise NetworkError() from e

    logging.info(f"GoldPriceZ responded with status {response.status_code}")

    if not response.is_success:
        body = response.text
        logging.error(
            f"GoldPriceZ API error for {currency}: {response.status_code} {summarize_body(body)}"
        )
        raise UpstreamStatusError(response.status_code, body)

    try:
        payload = response.json()
    except (ValueError, RecursionError) as e:
        logging.error(f"Failed to parse JSON from GoldPriceZ for {currency}: {str(e)}")
        raise ParseError() from e

    if payload is None:
        logging.error(f"GoldPriceZ returned a null body for {currency}")
        raise ParseError()

    return payload

# ══════════════════════════════════════════════════════════════════════════════
# FastAPI Application
# ══════════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI):
    if not get_settings().goldpricez_api_key:
        logging.warning("GOLDPRICEZ_API_KEY missing. Set it in .env before calling /api/rates")
    yield
    await close_http_client()


app = FastAPI(
    title="Gold & Silver Rates API",
    description="""
Live **gold** and **silver** prices per gram, troy ounce and kilogram, proxied
from GoldPriceZ.com and normalized into one stable response shape.

```bash
curl http://localhost:4000/api/rates?currency=inr
```
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[get_settings().cors_origin],
    allow_methods=["GET"],
    allow_headers=["*"],
)

# ══════════════════════════════════════════════════════════════════════════════
# API Endpoints
# ══════════════════════════════════════════════════════════════════════════════

@app.get("/", tags=["Root"])
async def root():
    """Welcome endpoint with API information."""
    return {
        "name": "Gold & Silver Rates API",
        "version": "1.0.0",
        "documentation": "/docs",
        "endpoints": {
            "rates": "/api/rates?currency=usd",
            "health": "/api/health",
        },
    }


@app.get("/api/health", response_model=HealthResponse, tags=["System"])
async def health_check():
    return HealthResponse(status="ok")


@app.get("/api/rates", response_model=RatesResponse, tags=["Prices"])
async def get_rates(
    request: Request,
    currency: Optional[str] = Query(
        default=None,
        description="Currency code (case-insensitive), defaults to usd",
        examples=["usd", "inr"],
    ),
    settings: Settings = Depends(get_settings),
    client: httpx.AsyncClient = Depends(get_http_client),
):
    """
    Get gold and silver prices in the requested currency.

    Prices come from GoldPriceZ and are normalized to per-gram, per-troy-ounce
    and per-kilogram values. Upstream failures are reported as 502.
    """
    currency = (currency or "").strip().lower() or DEFAULT_CURRENCY
    client_host = request.client.host if request.client else "unknown"
    logging.info(f"[/api/rates] Incoming request - currency={currency} from {client_host}")

    payload = await fetch_upstream_payload(client, settings, currency)
    return normalize_payload(payload, currency)

# ══════════════════════════════════════════════════════════════════════════════
# Error Handlers
# ══════════════════════════════════════════════════════════════════════════════

@app.exception_handler(RatesError)
async def rates_error_handler(request: Request, exc: RatesError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(404)
async def not_found_handler(request, exc):
    return JSONResponse(
        status_code=404,
        content={
            "error": "Not Found",
            "message": "The requested endpoint does not exist.",
            "available_endpoints": ["/api/rates", "/api/health", "/docs"],
        },
    )


@app.exception_handler(Exception)
async def server_error_handler(request: Request, exc: Exception):
    logging.exception(f"Unhandled exception in {request.url.path}: {exc!r}")
    error = InternalError()
    return JSONResponse(status_code=error.status_code, content=error.to_dict())

# ══════════════════════════════════════════════════════════════════════════════
# Run Server
# ══════════════════════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    print(f"Starting Gold & Silver Rates API on http://localhost:{settings.port}")
    print(f"Health Check: http://localhost:{settings.port}/api/health")

    uvicorn.run(app, host=settings.host, port=settings.port)
