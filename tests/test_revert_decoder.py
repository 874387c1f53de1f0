from eth_abi import encode

from pmm_settlement.settlement.errors import (
    ERROR_STRING_SELECTOR,
    PANIC_SELECTOR,
    RevertDecoder,
    extract_revert_data,
    selector_of,
)


def _payload(selector: str, types, values) -> str:
    return selector + encode(types, values).hex()


class RpcError(Exception):
    pass


class TestRevertDecoder:
    def setup_method(self):
        self.decoder = RevertDecoder()

    def test_error_string(self):
        decoded = self.decoder.decode_data(_payload(ERROR_STRING_SELECTOR, ["string"], ["Deadline passed"]))
        assert decoded.name == "Error"
        assert decoded.reason == "Deadline passed"

    def test_panic(self):
        decoded = self.decoder.decode_data(_payload(PANIC_SELECTOR, ["uint256"], [0x11]))
        assert decoded.name == "Panic"
        assert decoded.reason == "Panic(0x11)"

    def test_known_custom_error(self):
        decoded = self.decoder.decode_data(selector_of("TokenNotSupported()"))
        assert decoded.name == decoded.reason == "TokenNotSupported"

    def test_custom_error_with_args(self):
        data = _payload(selector_of("SafeERC20FailedOperation(address)"), ["address"], ["0x" + "12" * 20])
        assert self.decoder.decode_data(data).reason == "SafeERC20FailedOperation"

    def test_unknown_selector_keeps_data(self):
        decoded = self.decoder.decode_data("0xdeadbeef")
        assert decoded.selector == "0xdeadbeef"
        assert decoded.reason is None
        assert decoded.data == "0xdeadbeef"

    def test_no_data(self):
        decoded = self.decoder.decode(RuntimeError("timeout"))
        assert decoded.selector is None and decoded.data is None

    def test_extra_signatures(self):
        decoder = RevertDecoder(["VaultPaused()"])
        assert decoder.decode_data(selector_of("VaultPaused()")).name == "VaultPaused"
        assert decoder.decode_data(selector_of("TokenNotSupported()")).name is None


def test_revert_data_from_rpc_error_dict():
    data = selector_of("Unauthorized()")
    exc = RpcError({"code": 3, "message": "execution reverted", "data": data})
    assert extract_revert_data(exc) == data


def test_revert_data_from_bytes_arg():
    exc = RpcError(bytes.fromhex("4e487b71") + b"\x00" * 32)
    assert extract_revert_data(exc).startswith(PANIC_SELECTOR)
