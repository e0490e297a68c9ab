"""
Targeting rule evaluation.

A rule set is stored as JSON on a channel or a release::

    {"match": "all", "rules": [{"field": "platform", "op": "eq", "value": "ios"}]}

It is parsed once into ``RuleSet``/``Rule`` values and evaluated against a
flat mapping of device attributes (see ``attributes_from_check_in``).

Evaluation fails closed: a missing attribute, an unknown operator or a value
that cannot be compared makes the rule a non-match, never a match.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Tuple

from . import versioning
from .exceptions import InvalidTargetingRules

CUSTOM_PREFIX = 'custom.'


class Match(str, Enum):
    ALL = 'all'
    ANY = 'any'


class Operator(str, Enum):
    EQ = 'eq'
    NEQ = 'neq'
    IN = 'in'
    NOT_IN = 'not_in'
    GT = 'gt'
    GTE = 'gte'
    LT = 'lt'
    LTE = 'lte'
    STARTS_WITH = 'starts_with'
    ENDS_WITH = 'ends_with'
    CONTAINS = 'contains'
    SEMVER_GT = 'semver_gt'
    SEMVER_GTE = 'semver_gte'
    SEMVER_LT = 'semver_lt'
    SEMVER_LTE = 'semver_lte'

    @classmethod
    def parse(cls, value):
        try:
            return cls(value)
        except ValueError:
            return None


LIST_OPERATORS = (Operator.IN, Operator.NOT_IN)
SEMVER_OPERATORS = (Operator.SEMVER_GT, Operator.SEMVER_GTE, Operator.SEMVER_LT, Operator.SEMVER_LTE)


@dataclass(frozen=True)
class Rule:
    field: str
    # None for an operator this server does not know; such a rule never matches
    operator: Optional[Operator]
    value: Any
    raw_operator: str = ''


@dataclass(frozen=True)
class RuleSet:
    match: Match
    rules: Tuple[Rule, ...]

    @classmethod
    def from_json(cls, data):
        """
        Parse stored rule JSON.

        Raises InvalidTargetingRules when the structure itself is broken.
        Unknown operators are not structural errors: they parse to a rule
        that never matches.
        """
        if not isinstance(data, dict):
            raise InvalidTargetingRules("Targeting rules must be an object")

        match = Match.ALL
        if 'match' in data:
            try:
                match = Match(data['match'])
            except ValueError:
                raise InvalidTargetingRules(f"Unknown match mode {data['match']!r}; use 'all' or 'any'")

        raw_rules = data.get('rules', [])
        if not isinstance(raw_rules, list):
            raise InvalidTargetingRules("'rules' must be a list")

        rules = []
        for index, raw in enumerate(raw_rules):
            if not isinstance(raw, dict):
                raise InvalidTargetingRules(f"Rule {index} must be an object")
            field = raw.get('field') or ''
            raw_operator = raw.get('op', raw.get('operator'))
            operator = Operator.parse(raw_operator)
            if not isinstance(field, str):
                raise InvalidTargetingRules(f"Rule {index} 'field' must be a string")
            # semver rules fall back to appVersion
            if not field and operator not in SEMVER_OPERATORS:
                raise InvalidTargetingRules(f"Rule {index} is missing 'field'")
            rules.append(Rule(
                field=field,
                operator=operator,
                value=raw.get('value'),
                raw_operator=str(raw_operator),
            ))
        return cls(match=match, rules=tuple(rules))

    def to_json(self):
        return {
            'match': self.match.value,
            'rules': [
                {
                    'field': rule.field,
                    'op': rule.operator.value if rule.operator else rule.raw_operator,
                    'value': rule.value,
                }
                for rule in self.rules
            ],
        }


def validate_rule_set(data):
    """
    Strict check for rule sets written through the admin API.

    Unlike ``RuleSet.from_json`` this also rejects unknown operators and
    list operators without a list value, so bad configuration is refused at
    write time instead of silently never matching.
    """
    rule_set = RuleSet.from_json(data)
    for index, rule in enumerate(rule_set.rules):
        if rule.operator is None:
            raise InvalidTargetingRules(f"Rule {index} uses unknown operator {rule.raw_operator!r}")
        if rule.operator in LIST_OPERATORS and not isinstance(rule.value, list):
            raise InvalidTargetingRules(f"Rule {index} operator '{rule.operator.value}' needs a list value")
    return rule_set


def attributes_from_check_in(check_in):
    """Flatten a DeviceCheckIn into the attribute names rules refer to."""
    attributes = {}
    custom = check_in.custom or {}
    for key, value in custom.items():
        attributes[key] = value
        attributes[CUSTOM_PREFIX + key] = value

    builtin = {
        'deviceId': check_in.device_id,
        'platform': check_in.platform,
        'os': check_in.platform,
        'osVersion': check_in.os_version,
        'appVersion': check_in.app_version,
        'locale': check_in.locale,
        'currentVersion': check_in.current_version,
    }
    for key, value in builtin.items():
        if value not in (None, ''):
            attributes[key] = value
    return attributes


def _as_float(value):
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _numeric(compare):
    def matcher(actual, expected):
        left, right = _as_float(actual), _as_float(expected)
        if left is None or right is None:
            return False
        return compare(left, right)
    return matcher


def _text(compare):
    def matcher(actual, expected):
        if expected is None:
            return False
        return compare(str(actual), str(expected))
    return matcher


def _members(expected):
    if not isinstance(expected, list):
        return None
    return {str(item) for item in expected}


def _in(actual, expected):
    members = _members(expected)
    return members is not None and str(actual) in members


def _not_in(actual, expected):
    members = _members(expected)
    return members is not None and str(actual) not in members


_MATCHERS = {
    Operator.EQ: _text(lambda a, b: a == b),
    Operator.NEQ: _text(lambda a, b: a != b),
    Operator.STARTS_WITH: _text(lambda a, b: a.startswith(b)),
    Operator.ENDS_WITH: _text(lambda a, b: a.endswith(b)),
    Operator.CONTAINS: _text(lambda a, b: b in a),
    Operator.IN: _in,
    Operator.NOT_IN: _not_in,
    Operator.GT: _numeric(lambda a, b: a > b),
    Operator.GTE: _numeric(lambda a, b: a >= b),
    Operator.LT: _numeric(lambda a, b: a < b),
    Operator.LTE: _numeric(lambda a, b: a <= b),
    Operator.SEMVER_GT: _text(versioning.gt),
    Operator.SEMVER_GTE: _text(versioning.gte),
    Operator.SEMVER_LT: _text(versioning.lt),
    Operator.SEMVER_LTE: _text(versioning.lte),
}


def evaluate_rule(rule, attributes):
    if rule.operator is None:
        return False

    field = rule.field
    if rule.operator in SEMVER_OPERATORS and not field:
        field = 'appVersion'

    actual = attributes.get(field)
    if actual is None or actual == '':
        return False
    return _MATCHERS[rule.operator](actual, rule.value)


def evaluate(rule_set, attributes):
    """
    True when the device attributes satisfy ``rule_set``.

    ``rule_set`` may be a parsed RuleSet, raw JSON, or None (no targeting,
    always true). Raw JSON that is structurally broken raises
    InvalidTargetingRules; callers serving devices catch it and skip the
    release.
    """
    if rule_set is None:
        return True
    if not isinstance(rule_set, RuleSet):
        rule_set = RuleSet.from_json(rule_set)

    results = (evaluate_rule(rule, attributes) for rule in rule_set.rules)
    if rule_set.match is Match.ANY:
        return any(results)
    return all(results)
