import pytest
from datetime import datetime

from keeper.config import DEFAULT_KNOWN_TOKEN_POLICIES, UNKNOWN_SYMBOL
from keeper.decoder import VaultDecoder
from keeper.error_handling import DecodeError
from keeper.ledger_data import PlutusBytes, PlutusConstr, PlutusInt, parse_plutus_data
from keeper.models import RawLedgerRecord, VaultStatus

from conftest import DJED_POLICY, OWNER_HASH, make_vault_datum

UNLISTED_POLICY = "00" * 28


class TestPlutusData:
    """Tagged-variant tree parsing"""

    def test_parses_nested_constructor(self):
        tree = parse_plutus_data({"constructor": 0, "fields": [{"int": 7}, {"bytes": "beef"}]})

        assert tree == PlutusConstr(0, (PlutusInt(7), PlutusBytes(b"\xbe\xef")))

    def test_to_json_reproduces_input(self):
        raw = make_vault_datum()
        assert parse_plutus_data(raw).to_json() == raw

    def test_list_and_map(self):
        tree = parse_plutus_data({"list": [{"int": 1}, {"map": [{"k": {"bytes": "00"}, "v": {"int": 2}}]}]})

        assert tree.items[0] == PlutusInt(1)
        assert tree.items[1].entries == ((PlutusBytes(b"\x00"), PlutusInt(2)),)

    @pytest.mark.parametrize("payload", [
        {"real": 1.5},
        {"int": "12"},
        {"int": True},
        {"bytes": "xyz"},
        {"constructor": -1, "fields": []},
        {"constructor": 0, "fields": "nope"},
        {"map": [{"k": {"int": 1}}]},
        [1, 2, 3],
    ])
    def test_malformed_payloads_raise(self, payload):
        with pytest.raises(DecodeError):
            parse_plutus_data(payload)

    def test_constructor_depth_is_bounded(self):
        nested = {"constructor": 0, "fields": [
            {"constructor": 0, "fields": [
                {"constructor": 0, "fields": [
                    {"constructor": 0, "fields": []}
                ]}
            ]}
        ]}

        with pytest.raises(DecodeError, match="depth 3"):
            parse_plutus_data(nested, max_depth=3)
        assert parse_plutus_data(nested, max_depth=4).index == 0


class TestVaultDecoder:
    """Decoding vault datums into Vault records"""

    @pytest.fixture
    def decoder(self):
        return VaultDecoder(DEFAULT_KNOWN_TOKEN_POLICIES)

    def test_decodes_well_formed_datum(self, decoder):
        vault = decoder.decode_vault(make_vault_datum(), "ab12#0")

        assert vault.vault_id == "ab12#0"
        assert vault.owner_key_hash == OWNER_HASH
        assert vault.pool_reference == DJED_POLICY
        assert vault.asset_a == "ADA"
        assert vault.asset_b == "DJED"
        assert vault.symbol_resolved is True
        assert vault.deposit_amount_a == 1_000_000_000
        assert vault.deposit_amount_b == 1_000_000_000
        assert vault.lp_token_amount == 1_000_000
        assert vault.il_threshold_basis_points == 500
        assert vault.threshold_percentage == 5.0
        assert vault.emergency_withdraw_enabled is True
        assert vault.entry_price == 1.0
        assert vault.status == VaultStatus.ACTIVE
        assert vault.created_at == datetime(2023, 11, 14, 22, 13, 20)

    def test_entry_price_is_reserve_ratio(self, decoder):
        vault = decoder.decode_vault(make_vault_datum(reserve_a=400, reserve_b=100), "ab12#0")
        assert vault.entry_price == 0.25

    def test_empty_reserve_gives_zero_entry_price(self, decoder):
        vault = decoder.decode_vault(make_vault_datum(reserve_a=0), "ab12#0")
        assert vault.entry_price == 0.0

    def test_emergency_withdraw_false(self, decoder):
        vault = decoder.decode_vault(make_vault_datum(emergency_withdraw=False), "ab12#0")
        assert vault.emergency_withdraw_enabled is False

    def test_symbol_from_token_name(self, decoder):
        datum = make_vault_datum(lp_policy=UNLISTED_POLICY, lp_token_name=b"hosky".hex())

        vault = decoder.decode_vault(datum, "ab12#0")

        assert vault.asset_b == "HOSKY"
        assert vault.symbol_resolved is True

    @pytest.mark.parametrize("token_name", ["", b"LP".hex(), "ff00ff"])
    def test_unresolved_symbol_uses_sentinel(self, decoder, token_name):
        datum = make_vault_datum(lp_policy=UNLISTED_POLICY, lp_token_name=token_name)

        vault = decoder.decode_vault(datum, "ab12#0")

        assert vault.asset_b == UNKNOWN_SYMBOL
        assert vault.symbol_resolved is False

    def test_wrong_field_count_carries_reference(self, decoder):
        datum = make_vault_datum()
        datum["fields"] = datum["fields"][:5]

        with pytest.raises(DecodeError) as exc_info:
            decoder.decode_vault(datum, "bad#3")

        assert exc_info.value.reference == "bad#3"
        assert "expected 6 fields" in str(exc_info.value)

    def test_wrong_field_type(self, decoder):
        datum = make_vault_datum()
        datum["fields"][3] = {"bytes": "00"}

        with pytest.raises(DecodeError, match="lp_token_amount"):
            decoder.decode_vault(datum, "bad#0")

    def test_non_positive_threshold_rejected(self, decoder):
        with pytest.raises(DecodeError, match="must be positive"):
            decoder.decode_vault(make_vault_datum(max_il_bp=0), "bad#0")

    def test_negative_amount_rejected(self, decoder):
        with pytest.raises(DecodeError, match="Negative amount"):
            decoder.decode_vault(make_vault_datum(amount_b=-1), "bad#0")

    def test_batch_collects_errors_without_aborting(self, decoder):
        broken = make_vault_datum()
        broken["fields"][1] = {"int": 5}
        records = [
            RawLedgerRecord(tx_hash="aa", output_index=0, datum=make_vault_datum()),
            RawLedgerRecord(tx_hash="bb", output_index=0, datum=broken),
            RawLedgerRecord(tx_hash="cc", output_index=1, datum=make_vault_datum(max_il_bp=1000)),
            RawLedgerRecord(tx_hash="dd", output_index=0, datum=None),
        ]

        result = decoder.decode_batch(records)

        assert [v.vault_id for v in result.vaults] == ["aa#0", "cc#1"]
        assert len(result.errors) == 1
        assert result.errors[0].reference == "bb#0"
        assert result.skipped == 1
