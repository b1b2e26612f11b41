"""
EnvironmentSet — the set of environment codes a module is currently live in.

Codes are lowercase short strings (dev, stg, prod and store-specific QA variants such
as stg-qa). The persisted form is a dash-joined string, with a double dash
where a single one would read back as a dashed code. It is parsed and serialized
only at the persistence boundary.
"""

import re
from typing import Any, Iterable, Iterator, List, Optional, Set

from pydantic_core import core_schema

DEFAULT_ENVIRONMENT_CODES = ("dev", "stg-qa", "qa", "stg-prod", "stg", "prod")

_CODE_PATTERN = re.compile(r"^[a-z][a-z0-9]*(-[a-z0-9]+)*$")

# Codes never contain an empty dash group, so a double dash is unambiguous.
SEGMENT_SEPARATOR = "--"


def _known_codes(known: Optional[Iterable[str]]) -> Set[str]:
    return {c.lower() for c in (known or DEFAULT_ENVIRONMENT_CODES)}


def _split_segment(segment: str, known_codes: Set[str]) -> List[str]:
    """Split one single-dash segment into codes, longest known code first."""
    tokens = [t for t in segment.split("-") if t]
    codes: List[str] = []
    i = 0
    while i < len(tokens):
        end = i + 1
        for j in range(len(tokens), i + 1, -1):
            if "-".join(tokens[i:j]) in known_codes:
                end = j
                break
        codes.append("-".join(tokens[i:end]))
        i = end
    return codes


def normalize_env(code: str) -> str:
    """Lowercase and validate a single environment code."""
    if not isinstance(code, str):
        raise ValueError(f"Environment code must be a string, got {type(code).__name__}")
    normalized = code.strip().lower()
    if not _CODE_PATTERN.match(normalized):
        raise ValueError(f"Invalid environment code {code!r}")
    return normalized


class EnvironmentSet:
    """Insertion-ordered set of environment codes."""

    __slots__ = ("_codes",)

    def __init__(self, codes: Optional[Iterable[str]] = None):
        self._codes: List[str] = []
        for code in codes or ():
            self.add(code)

    # ── Set operations ────────────────────────────────────────────

    def contains(self, env: str) -> bool:
        return normalize_env(env) in self._codes

    def add(self, env: str) -> None:
        code = normalize_env(env)
        if code not in self._codes:
            self._codes.append(code)

    def remove(self, env: str) -> None:
        """Remove env if present. Removing the last code leaves an empty set."""
        code = normalize_env(env)
        if code in self._codes:
            self._codes.remove(code)

    def is_empty(self) -> bool:
        return not self._codes

    def is_exactly(self, env: str) -> bool:
        return self._codes == [normalize_env(env)]

    def codes(self) -> List[str]:
        return list(self._codes)

    def copy(self) -> "EnvironmentSet":
        return EnvironmentSet(self._codes)

    def __contains__(self, env: object) -> bool:
        return isinstance(env, str) and self.contains(env)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._codes))

    def __len__(self) -> int:
        return len(self._codes)

    def __bool__(self) -> bool:
        return bool(self._codes)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, EnvironmentSet):
            return set(self._codes) == set(other._codes)
        if isinstance(other, (set, frozenset, list, tuple)):
            return set(self._codes) == {normalize_env(c) for c in other}
        return NotImplemented

    def __hash__(self) -> int:
        return hash(frozenset(self._codes))

    def __repr__(self) -> str:
        return f"EnvironmentSet({self._codes!r})"

    # ── Persistence boundary ──────────────────────────────────────

    def serialize(self, known: Optional[Iterable[str]] = None) -> str:
        """
        Dash-joined form, e.g. 'dev-prod' for {dev, prod}. Where a single dash
        would read back as a known dashed code ({stg, prod} against stg-prod) the
        boundary is written as a double dash: 'stg--prod'. parse(serialize(s))
        gives back s, in order, for the same known codes.
        """
        known_codes = _known_codes(known)
        segments: List[List[str]] = []
        for code in self._codes:
            if segments:
                joined = segments[-1] + [code]
                if _split_segment("-".join(joined), known_codes) == joined:
                    segments[-1].append(code)
                    continue
            if _split_segment(code, known_codes) != [code]:
                raise ValueError(f"Environment code {code!r} contains a dash but is not a known code")
            segments.append([code])
        return SEGMENT_SEPARATOR.join("-".join(s) for s in segments)

    @classmethod
    def parse(cls, raw: Optional[str], known: Optional[Iterable[str]] = None) -> "EnvironmentSet":
        """
        Parse the dash-joined form. A double dash is a hard boundary; inside a
        segment known codes that themselves contain a dash (stg-qa, stg-prod) are
        matched greedily, longest first.
        """
        result = cls()
        if not raw or not raw.strip():
            return result
        known_codes = _known_codes(known)
        for segment in raw.strip().lower().split(SEGMENT_SEPARATOR):
            for code in _split_segment(segment, known_codes):
                result.add(code)
        return result

    @classmethod
    def coerce(cls, value: Any) -> "EnvironmentSet":
        if value is None:
            return cls()
        if isinstance(value, EnvironmentSet):
            return value.copy()
        if isinstance(value, str):
            return cls.parse(value)
        if isinstance(value, (list, tuple, set, frozenset)):
            return cls(value)
        raise ValueError(f"Cannot build an EnvironmentSet from {type(value).__name__}")

    @classmethod
    def __get_pydantic_core_schema__(cls, source_type: Any, handler: Any) -> core_schema.CoreSchema:
        from_list = core_schema.no_info_after_validator_function(
            cls.coerce, core_schema.list_schema(core_schema.str_schema()),
        )
        return core_schema.json_or_python_schema(
            json_schema=from_list,
            python_schema=core_schema.no_info_plain_validator_function(cls.coerce),
            serialization=core_schema.plain_serializer_function_ser_schema(lambda v: v.codes()),
        )
