"""Guardrail re-scan for machine-generated fixes.

A heuristic, not a security boundary: the isolate is the boundary. The scan
exists so a streamed fix that reaches for sandbox-escape idioms is shown to
the caller instead of being executed. Rules are a pluggable predicate set;
tightening them never touches pipeline logic.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

logger = logging.getLogger("fixloop.guardrails")

Predicate = Callable[[str], bool]


@dataclass(frozen=True)
class GuardRule:
    name: str
    category: str
    predicate: Predicate


def pattern_rule(name: str, category: str, pattern: str, flags: int = 0) -> GuardRule:
    compiled = re.compile(pattern, flags)
    return GuardRule(name=name, category=category, predicate=lambda code: compiled.search(code) is not None)


DYNAMIC_EVALUATION = [
    pattern_rule("eval", "dynamic_evaluation", r"\beval\s*\("),
    pattern_rule("function_constructor", "dynamic_evaluation", r"\bFunction\s*\("),
    pattern_rule("string_timer", "dynamic_evaluation", r"\bset(?:Timeout|Interval)\s*\(\s*['\"`]"),
]

PROTOTYPE_MANIPULATION = [
    pattern_rule("constructor_chain", "prototype_manipulation", r"constructor\s*\.\s*constructor"),
    pattern_rule("constructor_index", "prototype_manipulation", r"\[\s*['\"`]constructor['\"`]\s*\]"),
    pattern_rule("proto", "prototype_manipulation", r"__proto__"),
    pattern_rule("set_prototype", "prototype_manipulation", r"\b(?:Object|Reflect)\s*\.\s*setPrototypeOf\s*\("),
]

MODULE_LOADING = [
    pattern_rule("require", "module_loading", r"\brequire\s*\("),
    pattern_rule("dynamic_import", "module_loading", r"\bimport\s*\("),
    pattern_rule("static_import", "module_loading", r"^\s*import\s+[\w{*'\"]", re.MULTILINE),
]

PROFILES: dict[str, list[GuardRule]] = {
    "strict": [*DYNAMIC_EVALUATION, *PROTOTYPE_MANIPULATION, *MODULE_LOADING],
    "minimal": [*DYNAMIC_EVALUATION],
}


@dataclass
class GuardrailVerdict:
    passed: bool
    matched: list[str] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)

    @property
    def reason(self) -> str:
        if self.passed:
            return ""
        return f"Generated code contains potentially unsafe patterns: {', '.join(self.matched)}"


class Guardrails:
    def __init__(self, rules: Iterable[GuardRule]):
        self._rules = list(rules)

    @classmethod
    def profile(cls, name: str = "strict") -> Guardrails:
        if name not in PROFILES:
            raise ValueError(f"Unknown guardrail profile: {name}")
        return cls(PROFILES[name])

    @property
    def rules(self) -> list[GuardRule]:
        return list(self._rules)

    def with_rule(self, rule: GuardRule) -> Guardrails:
        return Guardrails([*self._rules, rule])

    def scan(self, code: str) -> GuardrailVerdict:
        matched: list[str] = []
        categories: list[str] = []
        for rule in self._rules:
            if rule.predicate(code or ""):
                matched.append(rule.name)
                if rule.category not in categories:
                    categories.append(rule.category)
        if matched:
            logger.warning("guardrail_match", extra={"rules": matched, "categories": categories})
        return GuardrailVerdict(passed=not matched, matched=matched, categories=categories)
