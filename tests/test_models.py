import pytest
from pydantic import ValidationError

from models.fee_event import FeeCollectedEvent, normalize_address
from tests.fakes import make_event


class TestFeeCollectedEvent:

    def test_addresses_are_lowercased(self):
        event = make_event(1, integrator="0x" + "AB" * 20, token="0x" + "Cd" * 20)

        assert event.integrator == "0x" + "ab" * 20
        assert event.token == "0x" + "cd" * 20

    def test_amounts_accept_decimal_strings(self):
        data = make_event(1).model_dump()
        data["integrator_fee"] = "000123"

        assert FeeCollectedEvent(**data).integrator_fee == "123"

    @pytest.mark.parametrize("amount", [-1, 1.5, True, "12a", "-5", "", "١٢"])
    def test_amounts_reject_invalid_values(self, amount):
        with pytest.raises(ValidationError):
            make_event(1, integrator_fee=amount)

    def test_rejects_bad_tx_hash(self):
        data = make_event(1).model_dump()
        data["tx_hash"] = "0x1234"

        with pytest.raises(ValidationError):
            FeeCollectedEvent(**data)

    def test_key_identifies_event(self):
        event = make_event(5, log_index=2)

        assert event.key == (137, 5, "0x" + f"{5:064x}", 2)

    def test_document_excludes_created_at(self):
        assert "created_at" not in make_event(1).to_document()


class TestNormalizeAddress:

    def test_lowercases(self):
        assert normalize_address("0x" + "AA" * 20) == "0x" + "aa" * 20

    @pytest.mark.parametrize("value", ["0x123", "aa" * 20, "0x" + "zz" * 20, None])
    def test_rejects_invalid(self, value):
        with pytest.raises(ValueError):
            normalize_address(value)
