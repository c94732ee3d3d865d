# Copyright (c) 2024 Digital Asset (Switzerland) GmbH and/or its affiliates. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

from acs_sync.daml_decimal import DamlDecimal, is_decimal_string
from acs_sync.errors import DecimalParseError

JsonValue = Union[str, int, float, bool, None, dict, list]

INITIAL_AMOUNT = "initialAmount"

KNOWN_AMOUNT_PATHS: List[Tuple[str, ...]] = [
    ("amount", "initialAmount"),
    ("amulet", "amount", "initialAmount"),
    ("stake", "initialAmount"),
]

# Tried in order when picking a single amount out of a contract
AMOUNT_CANDIDATE_PATHS: List[Tuple[str, ...]] = KNOWN_AMOUNT_PATHS + [
    ("state", "amount", "initialAmount"),
    ("balance", "initialAmount"),
    ("amount",),
]

LOCKED_AMOUNT_PATH = ("amulet", "amount", "initialAmount")

DENIED_KEYS = re.compile(r"id|hash|cid|guid|index", re.IGNORECASE)

STATUS_KEYS = frozenset(["status", "state", "phase", "result"])

MAX_STATUS_VALUE_LENGTH = 64


@dataclass
class PayloadSummary:
    field_sums: Dict[str, DamlDecimal] = field(default_factory=dict)
    # status value -> occurrences, across all status-like keys
    status_tallies: Dict[str, int] = field(default_factory=dict)

    def add_sum(self, key, value: DamlDecimal):
        self.field_sums[key] = self.field_sums.get(key, DamlDecimal.zero()) + value

    def add_status(self, value: str):
        self.status_tallies[value] = self.status_tallies.get(value, 0) + 1


def lookup_path(value: JsonValue, path) -> Optional[JsonValue]:
    for key in path:
        if not isinstance(value, dict) or key not in value:
            return None
        value = value[key]
    return value


def pick_amount(create_arguments: JsonValue, paths=AMOUNT_CANDIDATE_PATHS) -> Optional[DamlDecimal]:
    """The first candidate path holding a parseable amount, or None."""
    for path in paths:
        value = lookup_path(create_arguments, path)
        if isinstance(value, float):
            value = str(value)
        if not isinstance(value, (str, int, DamlDecimal)) or isinstance(value, bool):
            continue
        try:
            return DamlDecimal.parse(value)
        except DecimalParseError:
            continue
    return None


class PayloadVisitor:
    """Walks a contract payload and folds numeric fields and status-like
    fields into a PayloadSummary."""

    def __init__(self, summary: Optional[PayloadSummary] = None):
        self.summary = summary if summary is not None else PayloadSummary()
        self._consumed = set()

    def visit_contract(self, create_arguments: JsonValue) -> PayloadSummary:
        self._consumed = set()
        for path in KNOWN_AMOUNT_PATHS:
            value = lookup_path(create_arguments, path)
            if value is not None:
                self.summary.add_sum(INITIAL_AMOUNT, DamlDecimal.parse_or_zero(value))
                self._consumed.add(path)
        self.visit(create_arguments, ())
        return self.summary

    def visit(self, value: JsonValue, path: Tuple[str, ...]):
        match value:
            case dict():
                self.visit_record(value, path)
            case list():
                for item in value:
                    self.visit(item, path)
            case _:
                pass

    def visit_record(self, record: dict, path: Tuple[str, ...]):
        for key, value in record.items():
            child_path = path + (key,)
            if isinstance(value, (dict, list)):
                self.visit(value, child_path)
            elif isinstance(value, str):
                self.visit_scalar(key, value, child_path)

    def visit_scalar(self, key: str, value: str, path: Tuple[str, ...]):
        if key in STATUS_KEYS:
            if value and len(value) <= MAX_STATUS_VALUE_LENGTH:
                self.summary.add_status(value)
            return
        if path in self._consumed or DENIED_KEYS.search(key):
            return
        if "." not in value or not is_decimal_string(value):
            return
        try:
            amount = DamlDecimal.parse(value)
        except DecimalParseError:
            # Out of Daml Decimal range, e.g. long digit strings in free text
            return
        self.summary.add_sum(key, amount)


def analyze_payload(create_arguments: JsonValue, summary=None) -> PayloadSummary:
    return PayloadVisitor(summary).visit_contract(create_arguments)
