# Copyright (c) 2024 Digital Asset (Switzerland) GmbH and/or its affiliates. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import re
from decimal import Context, Decimal, InvalidOperation, ROUND_HALF_EVEN, localcontext

from acs_sync.errors import DecimalParseError

DECIMAL_RE = re.compile(r"^[+-]?\d+(\.\d+)?$")

SCALE = Decimal("0.0000000001")

# Precision 38, rounding half-even, kept local so importing this module
# does not change the global decimal context.
_CONTEXT = Context(prec=38, rounding=ROUND_HALF_EVEN)


def is_decimal_string(value) -> bool:
    return isinstance(value, str) and DECIMAL_RE.match(value.strip()) is not None


# Daml Decimals have a precision of 38 and a scale of 10, i.e., 10 digits after the decimal point.
# Rounding is round_half_even.
class DamlDecimal:
    def __init__(self, decimal=0):
        with localcontext(_CONTEXT):
            if isinstance(decimal, DamlDecimal):
                self.decimal = decimal.decimal
            elif isinstance(decimal, bool):
                raise DecimalParseError(f"Cannot treat {decimal!r} as DamlDecimal")
            elif isinstance(decimal, (str, int)):
                try:
                    self.decimal = Decimal(decimal).quantize(SCALE)
                except InvalidOperation as e:
                    raise DecimalParseError(
                        f"Cannot treat {decimal!r} as DamlDecimal"
                    ) from e
            elif isinstance(decimal, Decimal):
                self.decimal = decimal.quantize(SCALE)
            else:
                raise DecimalParseError(f"Cannot treat {decimal!r} as DamlDecimal")
        if not self.decimal.is_finite():
            raise DecimalParseError(f"Cannot treat {decimal!r} as DamlDecimal")

    @classmethod
    def parse(cls, value):
        """Strict parse: anything that is not a plain signed decimal is rejected."""
        if isinstance(value, DamlDecimal):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            return cls(value)
        if not is_decimal_string(value):
            raise DecimalParseError(f"Not a decimal number: {value!r}")
        return cls(value.strip())

    @classmethod
    def parse_or_zero(cls, value):
        # Amount fields that fail to parse count as zero
        try:
            return cls.parse(value)
        except DecimalParseError:
            return cls.zero()

    @classmethod
    def zero(cls):
        return cls(0)

    def plus(self, other):
        return self + other

    def minus(self, other):
        return self - other

    def multiply(self, other):
        return self * other

    def to_fixed_string(self) -> str:
        return f"{self.decimal:.10f}"

    def to_number(self) -> float:
        return float(self.decimal)

    def is_zero(self) -> bool:
        return self.decimal.is_zero()

    def __mul__(self, other):
        other = DamlDecimal(other) if not isinstance(other, DamlDecimal) else other
        with localcontext(_CONTEXT):
            return DamlDecimal(self.decimal * other.decimal)

    def __add__(self, other):
        other = DamlDecimal(other) if not isinstance(other, DamlDecimal) else other
        with localcontext(_CONTEXT):
            return DamlDecimal(self.decimal + other.decimal)

    def __radd__(self, other):
        return self.__add__(other)

    def __sub__(self, other):
        other = DamlDecimal(other) if not isinstance(other, DamlDecimal) else other
        with localcontext(_CONTEXT):
            return DamlDecimal(self.decimal - other.decimal)

    def __str__(self):
        return self.to_fixed_string()

    def __repr__(self):
        return f"DamlDecimal({self.to_fixed_string()!r})"

    def __eq__(self, other):
        if not isinstance(other, DamlDecimal):
            return NotImplemented
        return self.decimal == other.decimal

    def __hash__(self):
        return hash(self.decimal)

    def __lt__(self, other):
        return self.decimal < other.decimal

    def __gt__(self, other):
        return self.decimal > other.decimal

    def __le__(self, other):
        return self.decimal <= other.decimal

    def __ge__(self, other):
        return self.decimal >= other.decimal
