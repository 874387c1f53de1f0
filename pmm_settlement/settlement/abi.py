"""Minimal contract ABIs for the calls payouts make."""

MAX_UINT256 = 2**256 - 1

ERC20_ABI = [
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "value", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

PAYMENT_ABI = [
    {
        "name": "payment",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {"name": "tradeId", "type": "bytes32"},
            {"name": "token", "type": "address"},
            {"name": "toUser", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "totalFee", "type": "uint256"},
            {"name": "deadline", "type": "uint256"},
        ],
        "outputs": [],
    },
]

LIQUIDATOR_ABI = [
    {
        "name": "payment",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {
                "name": "request",
                "type": "tuple",
                "components": [
                    {"name": "token", "type": "address"},
                    {"name": "amount", "type": "uint256"},
                    {"name": "externalCall", "type": "bytes"},
                ],
            },
            {
                "name": "auth",
                "type": "tuple",
                "components": [
                    {"name": "deadline", "type": "uint64"},
                    {"name": "threshold", "type": "uint16"},
                    {"name": "signatures", "type": "bytes[]"},
                ],
            },
        ],
        "outputs": [],
    },
    {
        "name": "eip712Domain",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [
            {"name": "fields", "type": "bytes1"},
            {"name": "name", "type": "string"},
            {"name": "version", "type": "string"},
            {"name": "chainId", "type": "uint256"},
            {"name": "verifyingContract", "type": "address"},
            {"name": "salt", "type": "bytes32"},
            {"name": "extensions", "type": "uint256[]"},
        ],
    },
]
