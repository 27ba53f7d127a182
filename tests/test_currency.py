"""
Tests for Money, Currency and the actor reference
"""

import pytest
from decimal import Decimal

from device_finance.actors import Actor, ActorKind, SYSTEM
from device_finance.currency import Money, Currency, quantize


class TestMoney:
    """Test Money arithmetic and precision"""

    def test_rounds_half_up(self):
        """Test HALF_UP rounding to two places"""
        assert Money(Decimal('540.025'), Currency.HNL).amount == Decimal('540.03')
        assert Money(Decimal('540.024'), Currency.HNL).amount == Decimal('540.02')
        assert quantize("0.005") == Decimal('0.01')

    def test_arithmetic(self):
        """Test addition, subtraction, multiplication and negation"""
        a = Money(Decimal('100.00'), Currency.HNL)
        b = Money(Decimal('30.50'), Currency.HNL)

        assert a + b == Money(Decimal('130.50'), Currency.HNL)
        assert a - b == Money(Decimal('69.50'), Currency.HNL)
        assert b * 3 == Money(Decimal('91.50'), Currency.HNL)
        assert -b == Money(Decimal('-30.50'), Currency.HNL)
        assert a.min(b) == b

    def test_comparison_and_state(self):
        """Test comparisons and sign checks"""
        zero = Money.zero(Currency.HNL)

        assert zero.is_zero()
        assert Money(Decimal('0.01'), Currency.HNL).is_positive()
        assert Money(Decimal('-0.01'), Currency.HNL).is_negative()
        assert zero < Money(Decimal('0.01'), Currency.HNL)

    def test_currency_mismatch(self):
        """Test that mixing currencies raises"""
        with pytest.raises(ValueError):
            Money(Decimal('1'), Currency.HNL) + Money(Decimal('1'), Currency.USD)
        with pytest.raises(ValueError):
            Money(Decimal('1'), Currency.HNL) < Money(Decimal('1'), Currency.USD)

    def test_formatting_and_lookup(self):
        """Test display formatting and currency lookup by code"""
        assert Money(Decimal('3500'), Currency.HNL).to_string() == "HNL 3,500.00"
        assert Currency.from_code("USD") == Currency.USD
        with pytest.raises(ValueError):
            Currency.from_code("EUR")


class TestActor:
    """Test the actor reference"""

    def test_human_and_system(self):
        """Test human and system audit identifiers"""
        clerk = Actor.human("clerk-1")

        assert clerk.audit_id == "clerk-1"
        assert not clerk.is_system
        assert SYSTEM.is_system
        assert SYSTEM.audit_id == "system"

    def test_validation(self):
        """Test that actor kind and user id must agree"""
        with pytest.raises(ValueError):
            Actor(ActorKind.HUMAN)
        with pytest.raises(ValueError):
            Actor(ActorKind.SYSTEM, "someone")

    def test_round_trip(self):
        """Test actor serialization"""
        assert Actor.from_dict(Actor.human("clerk-1").to_dict()) == Actor.human("clerk-1")
        assert Actor.from_dict(SYSTEM.to_dict()) == SYSTEM
        assert Actor.from_dict(None) is None
