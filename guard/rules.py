"""
guard/rules.py -- RouteRule, its configuration schema, and the RuleTable builder.

A RouteRule is one declarative policy entry:

    (matcher, method, public, permission)

  matcher     exactly one of a path prefix (startswith) or a regex (full match)
  method      an HTTP method or "ALL"
  public      True -> allowed for everyone, authenticated or not
  permission  None -> login-only gate; otherwise the key the caller must hold

Priority:
  build_rule_table() sorts once, at configuration-load time, into an
  immutable RuleTable. Order:
    1. regex rules before prefix rules
    2. longer matcher text before shorter (a specific prefix is never
       shadowed by a shorter one)
    3. exact method before ALL (GET /x beats ALL /x for GET requests)
    4. method name, matcher text, public flag, permission
  The key is total over distinct rules, so the result does not depend on the
  order the configuration listed them in, and sorting a sorted table is a
  no-op.

Configuration:
  Rules come from guard/route_map.py or a JSON file (ROUTE_MAP_FILE) holding a
  list of objects with the same keys. RouteRuleConfig validates each entry.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

ALL_METHODS = "ALL"


class RouteRuleConfig(BaseModel):
    """One entry of the route table as written in configuration."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    method: str = ALL_METHODS
    path: Optional[str] = None
    regex: Optional[str] = None
    public: bool = False
    permission: Optional[str] = None

    @field_validator("method")
    @classmethod
    def upper_method(cls, value: str) -> str:
        return (value or ALL_METHODS).upper()

    @model_validator(mode="after")
    def exactly_one_matcher(self) -> "RouteRuleConfig":
        if (self.path is None) == (self.regex is None):
            raise ValueError("route rule needs exactly one of 'path' or 'regex'")
        if self.regex is not None:
            try:
                re.compile(self.regex)
            except re.error as exc:
                raise ValueError(f"invalid regex {self.regex!r}: {exc}") from exc
        return self


@dataclass(frozen=True)
class RouteRule:
    matcher: str
    is_regex: bool = False
    method: str = ALL_METHODS
    public: bool = False
    permission: Optional[str] = None
    _pattern: Optional[re.Pattern] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "method", (self.method or ALL_METHODS).upper())
        if self.is_regex:
            object.__setattr__(self, "_pattern", re.compile(self.matcher))

    @classmethod
    def from_config(cls, config: RouteRuleConfig) -> RouteRule:
        if config.regex is not None:
            return cls(config.regex, True, config.method, config.public, config.permission)
        return cls(config.path, False, config.method, config.public, config.permission)

    def method_matches(self, method: str) -> bool:
        return self.method == ALL_METHODS or self.method == method.upper()

    def path_matches(self, path: str) -> bool:
        if self._pattern is not None:
            return self._pattern.fullmatch(path) is not None
        return path.startswith(self.matcher)

    def matches(self, path: str, method: str) -> bool:
        return self.method_matches(method) and self.path_matches(path)

    def describe(self) -> str:
        kind = "regex" if self.is_regex else "path"
        if self.public:
            access = "public"
        elif self.permission is None:
            access = "login"
        else:
            access = f"permission={self.permission}"
        return f"{self.method:<6} {kind}={self.matcher} {access}"


def priority_key(rule: RouteRule) -> tuple:
    return (
        0 if rule.is_regex else 1,
        -len(rule.matcher),
        1 if rule.method == ALL_METHODS else 0,
        rule.method,
        rule.matcher,
        rule.public,
        rule.permission or "",
    )


class RuleTable:
    """An ordered, immutable sequence of RouteRules. Read-only at request time."""

    __slots__ = ("_rules",)

    def __init__(self, rules: Iterable[RouteRule]) -> None:
        self._rules: tuple[RouteRule, ...] = tuple(rules)

    @property
    def rules(self) -> tuple[RouteRule, ...]:
        return self._rules

    def __iter__(self) -> Iterator[RouteRule]:
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    def match(self, path: str, method: str) -> Optional[RouteRule]:
        """Return the first rule matching (path, method), or None."""
        for rule in self._rules:
            if rule.matches(path, method):
                return rule
        return None

    def position(self, rule: RouteRule) -> int:
        return self._rules.index(rule)


RuleSource = Union[RouteRule, RouteRuleConfig, dict[str, Any]]


def _coerce(entry: RuleSource) -> RouteRule:
    if isinstance(entry, RouteRule):
        return entry
    if isinstance(entry, dict):
        entry = RouteRuleConfig.model_validate(entry)
    return RouteRule.from_config(entry)


def build_rule_table(entries: Iterable[RuleSource]) -> RuleTable:
    """Validate, sort by priority and freeze a rule table.

    Raises pydantic.ValidationError for a malformed entry so a bad
    configuration fails at startup rather than at request time.
    """
    return RuleTable(sorted((_coerce(e) for e in entries), key=priority_key))


def load_rule_table(path: str | Path) -> RuleTable:
    """Build a table from a JSON file containing a list of rule objects."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError(f"route map file {path} must contain a JSON list")
    return build_rule_table(data)
