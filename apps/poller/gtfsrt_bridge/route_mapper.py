"""Resolve upstream route codes to canonical GTFS route ids."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Mapping, Sequence

from .cache import SingleFlightCache
from .models import UNMAPPABLE, CanonicalRoute, Unmappable

LOGGER = logging.getLogger(__name__)

# Base alphanumeric code followed by optional variant markers
# (c = short-turn, v = variant, S = school, digit = variant number).
ROUTE_PATTERN = re.compile(r"^([A-Z0-9]+)(c?v?S?[0-9]?).*$")


class Outcome(str, Enum):
    MATCH = "match"
    NO_MATCH = "no_match"
    STOP = "stop"


@dataclass(frozen=True)
class RuleResult:
    outcome: Outcome
    route_id: str | None = None
    reason: str = ""


NO_MATCH = RuleResult(Outcome.NO_MATCH)


def normalize_route_code(code: str) -> str | None:
    match = ROUTE_PATTERN.match(code)
    if match is None:
        return None
    return match.group(1)


def find_by_short_name(
    routes: Sequence[CanonicalRoute],
    name: str,
    raw_code: str | None = None,
    case_sensitive_only: bool = False,
) -> CanonicalRoute | None:
    """Return the first route whose short name matches ``name``.

    Bus routes compare case-sensitively. Rail routes compare
    case-insensitively against ``name`` or ``raw_code`` unless
    ``case_sensitive_only`` is set.
    """
    folded = {name.casefold()}
    if raw_code:
        folded.add(raw_code.casefold())
    for route in routes:
        short_name = route.short_name
        if not short_name:
            continue
        if route.is_rail and not case_sensitive_only:
            if short_name.casefold() in folded:
                return route
        elif short_name == name:
            return route
    return None


class StaticOverrideRule:
    name = "static_override"

    def __init__(self, overrides: Mapping[str, str]) -> None:
        self.overrides = dict(overrides)

    def apply(self, code: str, routes: Sequence[CanonicalRoute]) -> RuleResult:
        target = self.overrides.get(code)
        if target is None:
            return NO_MATCH
        route = find_by_short_name(routes, target, case_sensitive_only=True)
        if route is None:
            LOGGER.warning(
                "Could not apply static mapping of %s to %s; continuing.", code, target
            )
            return NO_MATCH
        return RuleResult(Outcome.MATCH, route.route_id, "override")


class BlacklistRule:
    name = "blacklist"

    def __init__(self, blacklist: Iterable[str]) -> None:
        self.blacklist = frozenset(blacklist)

    def apply(self, code: str, routes: Sequence[CanonicalRoute]) -> RuleResult:
        base = normalize_route_code(code)
        if code in self.blacklist or (base is not None and base in self.blacklist):
            return RuleResult(Outcome.STOP, reason="blacklisted")
        return NO_MATCH


class NormalizedShortNameRule:
    name = "normalized_short_name"

    def apply(self, code: str, routes: Sequence[CanonicalRoute]) -> RuleResult:
        base = normalize_route_code(code)
        if base is None:
            return NO_MATCH
        route = find_by_short_name(routes, base, raw_code=code)
        if route is None:
            return RuleResult(Outcome.STOP, reason=f"no canonical route named {base}")
        return RuleResult(Outcome.MATCH, route.route_id)


class MalformedRule:
    name = "malformed"

    def apply(self, code: str, routes: Sequence[CanonicalRoute]) -> RuleResult:
        return RuleResult(Outcome.STOP, reason="malformed")


def default_rules(
    overrides: Mapping[str, str], blacklist: Iterable[str]
) -> list[StaticOverrideRule | BlacklistRule | NormalizedShortNameRule | MalformedRule]:
    return [
        StaticOverrideRule(overrides),
        BlacklistRule(blacklist),
        NormalizedShortNameRule(),
        MalformedRule(),
    ]


class RouteMapper:
    """Ordered rule chain over the agency's canonical routes, cached per code."""

    def __init__(
        self,
        routes: Sequence[CanonicalRoute],
        overrides: Mapping[str, str] | None = None,
        blacklist: Iterable[str] = (),
        rules: Sequence | None = None,
    ) -> None:
        self.routes = list(routes)
        self.rules = list(rules) if rules is not None else default_rules(overrides or {}, blacklist)
        self.cache: SingleFlightCache[str, str | Unmappable] = SingleFlightCache("route")
        self.lookups = 0

    def resolve(self, code: str) -> str | Unmappable:
        return self.cache.get_or_compute(code, self._map)

    def prime(self, codes: Iterable[str]) -> int:
        mapped = 0
        for code in codes:
            if self.resolve(code) is not UNMAPPABLE:
                mapped += 1
        LOGGER.info("Route mapping primed: %d of %d codes mapped", mapped, len(self.cache))
        return mapped

    def mappings(self) -> dict[str, str]:
        return {
            code: route_id
            for code, route_id in self.cache.snapshot().items()
            if route_id is not UNMAPPABLE
        }

    def _map(self, code: str) -> str | Unmappable:
        self.lookups += 1
        for rule in self.rules:
            result = rule.apply(code, self.routes)
            if result.outcome is Outcome.MATCH:
                suffix = " (using override)" if result.reason == "override" else ""
                LOGGER.info(
                    "Mapped upstream route %s to canonical route %s%s",
                    code,
                    result.route_id,
                    suffix,
                )
                return result.route_id  # type: ignore[return-value]
            if result.outcome is Outcome.STOP:
                if result.reason == "blacklisted":
                    LOGGER.info("Not mapping blacklisted upstream route %s", code)
                elif result.reason == "malformed":
                    LOGGER.warning("Not mapping malformed upstream route %s", code)
                else:
                    LOGGER.warning("Could not map upstream route %s: %s", code, result.reason)
                return UNMAPPABLE
        LOGGER.warning("Could not map upstream route %s: no rule matched", code)
        return UNMAPPABLE
