from __future__ import annotations

from collections.abc import Iterable

from .store import Rule


def match_rule(rules: Iterable[Rule], url: str | None) -> Rule | None:
    """Return the rule that governs ``url``.

    A rule matches when its pattern is a substring of the URL. Every rule is
    checked and the *last* match in list order wins, so a later entry
    overrides an earlier one on overlapping patterns. This is not first-match.
    """
    if not url:
        return None
    matched: Rule | None = None
    for rule in rules:
        if rule.url_pattern in url:
            matched = rule
    return matched
