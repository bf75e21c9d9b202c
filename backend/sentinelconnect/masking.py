"""
Column masking transforms.

Each masking rule is a small frozen dataclass with an ``apply(value)`` method.
Rules are resolved once per column when a run starts (``resolve_rule``), so the
per-row path never re-parses the column's parameter blob.

Supported rules and their JSON parameters:

- ``none``       identity, no parameters
- ``redact``     fixed placeholder, no parameters
- ``hash``       HMAC-SHA256 keyed by the configured masking secret;
                 ``{"length": 1..64}`` truncates the hex digest
- ``randomize``  synthetic value of the column's declared type;
                 ``{"min": n, "max": m}`` bounds numbers, ``{"days": n}``
                 bounds date jitter, ``{"seed": n}`` makes the generator
                 reproducible. Text read from a typed column (SQLite returns
                 dates as text) is parsed first; values that do not parse
                 become NULL and are counted in ``unparsable``
- ``partial``    keeps ``prefix``/``suffix`` characters and replaces the rest
                 with ``char`` (default: last 4 visible, ``*``)

Unknown rules, unknown keys and malformed values fail closed to ``redact``
with a warning.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import random
import string
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, localcontext
from typing import Any, Optional, Sequence

from .entities import ColumnSnapshot, MaskingType
from .errors import MaskingError
from .output import decimal_spec, duck_type_for

_log = logging.getLogger("sentinelconnect.masking")

REDACTED = "***REDACTED***"

DEFAULT_PARTIAL_SUFFIX = 4
DEFAULT_DATE_JITTER_DAYS = 30


def _canonical(value: Any) -> str:
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, Decimal):
        return format(value.normalize(), "f")
    return str(value)


def _parse_datetime(s: str) -> datetime:
    s = s.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    return datetime.fromisoformat(s)


def _parse_bool(s: str) -> bool:
    v = s.strip().lower()
    if v in ("1", "t", "true", "y", "yes"):
        return True
    if v in ("0", "f", "false", "n", "no"):
        return False
    raise ValueError(f"not a boolean: {s!r}")


# DuckDB output type -> parser for text values read from such a column
_TEXT_PARSERS = {
    "TIMESTAMP": _parse_datetime,
    "TIMESTAMPTZ": _parse_datetime,
    "DATE": lambda s: date.fromisoformat(s.strip()[:10]),
    "TIME": lambda s: time.fromisoformat(s.strip()),
    "BOOLEAN": _parse_bool,
    "BIGINT": lambda s: int(s.strip()),
    "DOUBLE": lambda s: float(s.strip()),
    "DECIMAL": lambda s: Decimal(s.strip()),
}


@dataclass(frozen=True)
class NoMask:
    kind = MaskingType.NONE
    deterministic = True
    preserves_type = True

    def apply(self, value: Any) -> Any:
        return value


@dataclass(frozen=True)
class Redact:
    kind = MaskingType.REDACT
    deterministic = True
    preserves_type = False

    placeholder: str = REDACTED

    def apply(self, value: Any) -> Any:
        # NULLs are redacted too so presence/absence does not leak
        return self.placeholder


@dataclass(frozen=True)
class Hash:
    kind = MaskingType.HASH
    deterministic = True
    preserves_type = False

    secret: str = field(repr=False)
    length: Optional[int] = None

    def apply(self, value: Any) -> Any:
        if value is None:
            return None
        digest = hmac.new(self.secret.encode("utf-8"), _canonical(value).encode("utf-8"), hashlib.sha256).hexdigest()
        return digest[: self.length] if self.length else digest


@dataclass(frozen=True)
class Randomize:
    kind = MaskingType.RANDOMIZE
    deterministic = False
    preserves_type = True

    low: Optional[float] = None
    high: Optional[float] = None
    days: int = DEFAULT_DATE_JITTER_DAYS
    seed: Optional[int] = None
    declared_type: Optional[str] = None
    _rng: random.Random = field(default=None, init=False, repr=False, compare=False)  # type: ignore[assignment]
    _duck_type: Optional[str] = field(default=None, init=False, repr=False, compare=False)
    unparsable: int = field(default=0, init=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_rng", random.Random(self.seed))
        object.__setattr__(self, "_duck_type", duck_type_for(self.declared_type))

    def apply(self, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, str) and self._duck_type:
            parser = _TEXT_PARSERS.get(self._duck_type.split("(")[0])
            if parser is not None:
                try:
                    value = parser(value)
                except (ValueError, ArithmeticError):
                    object.__setattr__(self, "unparsable", self.unparsable + 1)
                    return None
        if isinstance(value, datetime) and value.tzinfo is not None and self._duck_type == "TIMESTAMP":
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and decimal_spec(self._duck_type):
            value = Decimal(str(value))
        rng = self._rng
        if isinstance(value, bool):
            return rng.random() < 0.5
        if isinstance(value, int):
            return self._random_int(value)
        if isinstance(value, float):
            return self._random_float(value)
        if isinstance(value, Decimal):
            return self._random_decimal(value)
        if isinstance(value, datetime):
            span = self.days * 86400
            return value + timedelta(seconds=rng.randint(-span, span))
        if isinstance(value, date):
            return value + timedelta(days=rng.randint(-self.days, self.days))
        if isinstance(value, time):
            return time(rng.randrange(24), rng.randrange(60), rng.randrange(60))
        if isinstance(value, (bytes, bytearray, memoryview)):
            return bytes(rng.getrandbits(8) for _ in range(len(bytes(value))))
        return self._random_string(str(value))

    def _random_int(self, value: int) -> int:
        if self.low is not None and self.high is not None:
            return self._rng.randint(int(self.low), int(self.high))
        # Same number of digits and sign as the original
        digits = len(str(abs(value)))
        lo = 10 ** (digits - 1) if digits > 1 else 0
        out = self._rng.randint(lo, 10 ** digits - 1)
        return -out if value < 0 else out

    def _random_float(self, value: float) -> float:
        if self.low is not None and self.high is not None:
            return self._rng.uniform(float(self.low), float(self.high))
        if value == 0:
            return self._rng.uniform(0.0, 1.0)
        return value * self._rng.uniform(0.5, 1.5)

    def _random_decimal(self, value: Decimal) -> Decimal:
        spec = decimal_spec(self._duck_type)
        if spec is not None:
            precision, scale = spec
            quantum = Decimal(1).scaleb(-scale)
        else:
            exp = value.as_tuple().exponent
            quantum = Decimal(1).scaleb(exp) if isinstance(exp, int) else Decimal(1)
        with localcontext() as ctx:
            ctx.prec = 80
            out = Decimal(repr(self._random_float(float(value)))).quantize(quantum)
            if spec is not None:
                # Stay inside DECIMAL(p,s) so the output column accepts it
                limit = Decimal(10) ** (precision - scale) - quantum
                out = max(-limit, min(limit, out))
        return out

    def _random_string(self, value: str) -> str:
        # Keep the shape (length and character classes), not the content
        rng = self._rng
        out = []
        for ch in value:
            if ch.isdigit():
                out.append(rng.choice(string.digits))
            elif ch.isupper():
                out.append(rng.choice(string.ascii_uppercase))
            elif ch.islower():
                out.append(rng.choice(string.ascii_lowercase))
            else:
                out.append(ch)
        return "".join(out)


@dataclass(frozen=True)
class Partial:
    kind = MaskingType.PARTIAL
    deterministic = True
    preserves_type = False

    prefix: int = 0
    suffix: int = DEFAULT_PARTIAL_SUFFIX
    char: str = "*"

    def apply(self, value: Any) -> Any:
        if value is None:
            return None
        s = _canonical(value)
        keep = self.prefix + self.suffix
        if len(s) <= keep:
            # Nothing left to hide; mask it all rather than reveal the value
            return self.char * len(s)
        tail = s[len(s) - self.suffix:] if self.suffix else ""
        return s[: self.prefix] + self.char * (len(s) - keep) + tail


MaskRule = NoMask | Redact | Hash | Randomize | Partial


@dataclass(frozen=True)
class ResolvedRule:
    rule: MaskRule
    warnings: tuple[str, ...] = ()


_ALLOWED_PARAMS: dict[str, set[str]] = {
    MaskingType.NONE.value: set(),
    MaskingType.REDACT.value: set(),
    MaskingType.HASH.value: {"length"},
    MaskingType.RANDOMIZE.value: {"min", "max", "days", "seed"},
    MaskingType.PARTIAL.value: {"prefix", "suffix", "char"},
}


def parse_params(masking_type: str, raw: Optional[str]) -> dict:
    """Decode and validate a column's masking parameter blob. Raises MaskingError."""
    if raw is None or not str(raw).strip():
        params: dict = {}
    else:
        try:
            params = json.loads(raw)
        except ValueError as e:
            raise MaskingError(f"masking config is not valid JSON: {e}")
        if not isinstance(params, dict):
            raise MaskingError("masking config must be a JSON object")
    allowed = _ALLOWED_PARAMS.get(masking_type)
    if allowed is None:
        raise MaskingError(f"unknown masking rule '{masking_type}'")
    unknown = sorted(set(params) - allowed)
    if unknown:
        raise MaskingError(f"unknown parameters for {masking_type}: {', '.join(unknown)}")
    return params


def _non_negative_int(params: dict, key: str, default: int) -> int:
    v = params.get(key, default)
    if isinstance(v, bool) or not isinstance(v, int) or v < 0:
        raise MaskingError(f"'{key}' must be a non-negative integer")
    return v


def build_rule(masking_type: str, params: dict, secret: str, declared_type: Optional[str] = None) -> MaskRule:
    """Construct the rule variant for already-validated parameters. Raises MaskingError."""
    if masking_type == MaskingType.NONE.value:
        return NoMask()
    if masking_type == MaskingType.REDACT.value:
        return Redact()
    if masking_type == MaskingType.HASH.value:
        length = params.get("length")
        if length is not None and (isinstance(length, bool) or not isinstance(length, int) or not 1 <= length <= 64):
            raise MaskingError("'length' must be an integer between 1 and 64")
        if not secret:
            raise MaskingError("hash masking requires a configured secret")
        return Hash(secret=secret, length=length)
    if masking_type == MaskingType.RANDOMIZE.value:
        low, high = params.get("min"), params.get("max")
        if (low is None) != (high is None):
            raise MaskingError("'min' and 'max' must be given together")
        if low is not None:
            if not all(isinstance(x, (int, float)) and not isinstance(x, bool) for x in (low, high)) or low > high:
                raise MaskingError("'min'/'max' must be numbers with min <= max")
        days = _non_negative_int(params, "days", DEFAULT_DATE_JITTER_DAYS)
        seed = params.get("seed")
        if seed is not None and (isinstance(seed, bool) or not isinstance(seed, int)):
            raise MaskingError("'seed' must be an integer")
        return Randomize(low=low, high=high, days=days, seed=seed, declared_type=declared_type)
    if masking_type == MaskingType.PARTIAL.value:
        prefix = _non_negative_int(params, "prefix", 0)
        suffix = _non_negative_int(params, "suffix", DEFAULT_PARTIAL_SUFFIX if "prefix" not in params else 0)
        char = params.get("char", "*")
        if not isinstance(char, str) or len(char) != 1:
            raise MaskingError("'char' must be a single character")
        return Partial(prefix=prefix, suffix=suffix, char=char)
    raise MaskingError(f"unknown masking rule '{masking_type}'")


def resolve_rule(column: ColumnSnapshot, secret: str, *, allow_nondeterministic_pk: bool = False) -> ResolvedRule:
    """Resolve a column's rule once for a whole run, failing closed to redact."""
    mtype = (column.masking_type or MaskingType.NONE.value).strip().lower()
    try:
        params = parse_params(mtype, column.masking_config)
        rule = build_rule(mtype, params, secret, column.data_type)
    except MaskingError as e:
        msg = f"column '{column.source_column}': {e.message}; falling back to redact"
        _log.warning(msg)
        return ResolvedRule(Redact(), (msg,))
    if column.is_primary_key and not rule.deterministic and not allow_nondeterministic_pk:
        msg = (
            f"column '{column.source_column}' is a primary key; "
            f"{mtype} masking replaced with hash to keep it joinable"
        )
        _log.warning(msg)
        return ResolvedRule(Hash(secret=secret), (msg,))
    return ResolvedRule(rule)


def mask_row(rules: Sequence[MaskRule], row: Sequence[Any]) -> tuple:
    return tuple(rule.apply(v) for rule, v in zip(rules, row))
