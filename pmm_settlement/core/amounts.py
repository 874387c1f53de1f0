"""
Real-amount extraction from a settlement transaction's outputs.

The amount that actually left the settlement vault is the largest output not
paying back to the vault (the rest is change). When the vault address is not
known, or every output pays the vault, the largest output overall is used.

This is a best-effort heuristic, not proof of intent: callers should treat a
mismatch against the expected amount as a warning.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence


def _address(output: Mapping[str, Any]) -> Optional[str]:
    # Esplora uses scriptpubkey_address; plain dicts may use address
    addr = output.get("scriptpubkey_address")
    if addr is None:
        addr = output.get("address")
    return addr


def _first_max(outputs: Sequence[Mapping[str, Any]]) -> Mapping[str, Any]:
    best = outputs[0]
    for out in outputs[1:]:
        if int(out["value"]) > int(best["value"]):
            best = out
    return best


def extract_real_amount(
    outputs: Sequence[Mapping[str, Any]],
    vault_address: Optional[str],
) -> Optional[int]:
    """
    Return the real transferred amount in satoshis, or None if there are no outputs.

    Ties resolve to the first output with the maximal value.
    """
    if not outputs:
        return None

    if vault_address:
        non_vault = [out for out in outputs if _address(out) != vault_address]
        if non_vault:
            return int(_first_max(non_vault)["value"])

    return int(_first_max(outputs)["value"])
