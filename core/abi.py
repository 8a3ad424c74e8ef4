"""
Minimal ABI of the deployed vault - only the functions the backend calls.

Struct layouts mirror vault.models.Agreement / HistoryRecord field for field,
so decoding is positional (see core/chain.py).
"""

AGREEMENT_COMPONENTS = [
    {"name": "party", "type": "address"},
    {"name": "name", "type": "string"},
    {"name": "amountPerPeriod", "type": "uint256"},
    {"name": "intervalSeconds", "type": "uint256"},
    {"name": "nextPaymentTime", "type": "uint256"},
    {"name": "currentScheduleAddr", "type": "address"},
    {"name": "status", "type": "uint8"},
    {"name": "totalPaid", "type": "uint256"},
    {"name": "paymentCount", "type": "uint256"},
    {"name": "active", "type": "bool"},
    {"name": "direction", "type": "uint8"},
    {"name": "mode", "type": "uint8"},
    {"name": "token", "type": "address"},
    {"name": "payer", "type": "address"},
    {"name": "controller", "type": "address"},
    {"name": "escrowBalance", "type": "uint256"},
    {"name": "createdAt", "type": "uint256"},
]

HISTORY_COMPONENTS = [
    {"name": "agreementId", "type": "uint256"},
    {"name": "scheduleAddress", "type": "address"},
    {"name": "scheduledTime", "type": "uint256"},
    {"name": "createdAt", "type": "uint256"},
    {"name": "executedAt", "type": "uint256"},
    {"name": "status", "type": "uint8"},
    {"name": "amount", "type": "uint256"},
]


def _fn(name, inputs=(), outputs=(), mutability="nonpayable"):
    return {
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "name": name,
        "outputs": list(outputs),
        "stateMutability": mutability,
        "type": "function",
    }


_IDX = [("idx", "uint256")]
_UINT_OUT = [{"name": "", "type": "uint256"}]

VAULT_ABI = [
    # --- registration ---
    _fn("addAgent", [("party", "address"), ("name", "string"), ("amountPerPeriod", "uint256"),
                     ("intervalSeconds", "uint256"), ("token", "address")], _UINT_OUT),
    _fn("subscribeHbar", [("name", "string"), ("amountPerPeriod", "uint256"),
                          ("intervalSeconds", "uint256")], _UINT_OUT, "payable"),
    _fn("subscribeToken", [("token", "address"), ("name", "string"), ("amountPerPeriod", "uint256"),
                           ("intervalSeconds", "uint256")], _UINT_OUT),
    # --- lifecycle ---
    _fn("startSchedule", _IDX),
    _fn("cancelSchedule", _IDX),
    _fn("retrySchedule", _IDX),
    _fn("updateAgreement", _IDX + [("newAmount", "uint256"), ("newInterval", "uint256")]),
    _fn("topUp", _IDX, mutability="payable"),
    # --- owner ---
    _fn("setGasLimit", [("_gasLimit", "uint256")]),
    # --- views ---
    _fn("getAgreement", _IDX,
        [{"name": "", "type": "tuple", "components": AGREEMENT_COMPONENTS}], "view"),
    _fn("getAllAgreements", (),
        [{"name": "", "type": "tuple[]", "components": AGREEMENT_COMPONENTS}], "view"),
    _fn("getAgreementCount", (), _UINT_OUT, "view"),
    _fn("getAgreementsByParty", [("party", "address")], [{"name": "", "type": "uint256[]"}], "view"),
    _fn("getHistoryCount", (), _UINT_OUT, "view"),
    _fn("getRecentHistory", [("count", "uint256")],
        [{"name": "", "type": "tuple[]", "components": HISTORY_COMPONENTS}], "view"),
    _fn("getAgreementHistory", _IDX,
        [{"name": "", "type": "tuple[]", "components": HISTORY_COMPONENTS}], "view"),
    _fn("getCollectedHbar", (), _UINT_OUT, "view"),
    _fn("getVaultBalance", (), _UINT_OUT, "view"),
    _fn("scheduledCallGasLimit", (), _UINT_OUT, "view"),
    _fn("owner", (), [{"name": "", "type": "address"}], "view"),
    # --- events ---
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "idx", "type": "uint256"},
            {"indexed": True, "name": "party", "type": "address"},
            {"indexed": False, "name": "name", "type": "string"},
        ],
        "name": "AgreementRegistered",
        "type": "event",
    },
]

ERC20_ABI = [
    _fn("approve", [("spender", "address"), ("amount", "uint256")], [{"name": "", "type": "bool"}]),
    _fn("allowance", [("owner", "address"), ("spender", "address")], _UINT_OUT, "view"),
    _fn("balanceOf", [("account", "address")], _UINT_OUT, "view"),
    _fn("decimals", (), [{"name": "", "type": "uint8"}], "view"),
]
