from unittest.mock import MagicMock

import pytest

from pmm_settlement.config.config import Settings, _map_env
from pmm_settlement.config.config_validator import ValidationSeverity, validate_and_log, validate_config


class TestMapEnv:
    def test_parses_pairs(self, monkeypatch):
        monkeypatch.setenv("EVM_RPC_URLS", "ethereum=https://eth.test, base = https://base.test")
        assert _map_env("EVM_RPC_URLS") == {"ethereum": "https://eth.test", "base": "https://base.test"}

    def test_empty(self, monkeypatch):
        monkeypatch.delenv("EVM_RPC_URLS", raising=False)
        assert _map_env("EVM_RPC_URLS") == {}

    def test_rejects_bare_items(self, monkeypatch):
        monkeypatch.setenv("PAYMENT_ADDRESSES", "ethereum")
        with pytest.raises(ValueError, match="expected name=value"):
            _map_env("PAYMENT_ADDRESSES")


class TestSettingsLoad:
    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("REBALANCE_ENABLED", "true")
        monkeypatch.setenv("REBALANCE_MAX_RETRY_HOURS", "12")
        monkeypatch.setenv("BTC_ESPLORA_URLS", "https://a.test/api,https://b.test/api")
        monkeypatch.setenv("LIQUIDATION_APPROVER_KEYS", "0xaa, 0xbb")
        monkeypatch.setenv("PMM_EVM_PRIVATE_KEY", "0xsecret")

        cfg = Settings.load()

        assert cfg.rebalance_enabled is True
        assert cfg.max_retry_duration_hours == 12.0
        assert cfg.btc_esplora_urls == ["https://a.test/api", "https://b.test/api"]
        assert cfg.liquidation_approver_keys == ["0xaa", "0xbb"]
        dumped = cfg.dump()
        assert "pmm_evm_private_key" not in dumped
        assert "liquidation_approver_keys" not in dumped

    def test_payout_env(self, monkeypatch):
        monkeypatch.setenv("PMM_ID", "pmm-1")
        monkeypatch.setenv("SETTLEMENT_MAX_RETRIES", "5")
        monkeypatch.setenv("MIN_BALANCE_USD", "250.5")

        cfg = Settings.load()

        assert cfg.pmm_id == "pmm-1"
        assert cfg.settlement_max_retries == 5
        assert cfg.settlement_retry_delay_sec == 60.0
        assert cfg.min_balance_usd == 250.5

    def test_zero_settlement_retries_is_rejected(self, monkeypatch):
        monkeypatch.setenv("SETTLEMENT_MAX_RETRIES", "0")
        with pytest.raises(ValueError, match="SETTLEMENT_MAX_RETRIES"):
            Settings.load()

    def test_warning_above_threshold_is_rejected(self, monkeypatch):
        monkeypatch.setenv("REBALANCE_SLIPPAGE_THRESHOLD_BPS", "100")
        monkeypatch.setenv("REBALANCE_SLIPPAGE_HIGH_WARNING_BPS", "200")
        with pytest.raises(ValueError, match="HIGH_WARNING_BPS"):
            Settings.load()

    def test_non_positive_retry_window_is_rejected(self, monkeypatch):
        monkeypatch.setenv("REBALANCE_MAX_RETRY_HOURS", "0")
        with pytest.raises(ValueError, match="REBALANCE_MAX_RETRY_HOURS"):
            Settings.load()


class TestValidator:
    def test_complete_config_is_valid(self, make_settings):
        assert validate_config(make_settings()).valid

    def test_rebalancing_needs_wallet(self, make_settings):
        result = validate_config(make_settings(btc_wallet_url=None))
        assert not result.valid
        assert [i.field for i in result.get_errors()] == ["btc_wallet_url"]

    def test_solana_needs_signer_and_address(self, make_settings):
        result = validate_config(make_settings(solana_rpc_url="https://sol.test"))
        assert {i.field for i in result.get_errors()} == {"solana_signer_url", "pmm_solana_address"}

    def test_payout_settings(self, make_settings):
        result = validate_config(make_settings(pmm_id="pmm-1", solver_api_url="https://solver.test"))
        assert {i.field for i in result.get_errors()} == {"router_api_url", "pmm_evm_private_key"}

        result = validate_config(make_settings(settlement_max_retries=0, min_balance_usd=-1.0))
        assert {"settlement_max_retries", "min_balance_usd"} <= {i.field for i in result.get_errors()}

    def test_range_check(self, make_settings):
        result = validate_config(make_settings(slippage_threshold_bps=9_000))
        assert any(i.field == "slippage_threshold_bps" for i in result.get_errors())

    def test_risky_settings_only_warn(self, make_settings):
        result = validate_config(make_settings(btc_skip_confirm=True, evm_rpc_urls={"base": "https://base.test"}))
        assert result.valid
        warned = {i.field for i in result.issues if i.severity == ValidationSeverity.WARNING}
        assert {"btc_skip_confirm", "pmm_evm_private_key"} <= warned

    def test_validate_and_log(self, make_settings):
        logger = MagicMock()
        assert validate_and_log(make_settings(near_api_key=None), logger) is False
        errors = " ".join(call.args[0] for call in logger.error.call_args_list)
        assert "rebalancing requires NEAR_API_KEY" in errors
