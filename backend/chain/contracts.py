"""
Contract interfaces consumed by the service.

Only the event/function surface the reconciliation core depends on is
described; bytecode and deployment are out of scope.
"""

BRIDGE_CONTRACT_ABI = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "user", "type": "address"},
            {"indexed": False, "name": "amount", "type": "uint256"},
            {"indexed": False, "name": "onrampId", "type": "bytes32"},
        ],
        "name": "Deposit",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "user", "type": "address"},
            {"indexed": False, "name": "amount", "type": "uint256"},
            {"indexed": False, "name": "offRampId", "type": "bytes32"},
        ],
        "name": "Withdrawal",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "user", "type": "address"},
            {"indexed": False, "name": "amount", "type": "uint256"},
            {"indexed": False, "name": "destinationChainId", "type": "uint256"},
        ],
        "name": "Bridge",
        "type": "event",
    },
    {
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "onrampId", "type": "bytes32"},
        ],
        "name": "deposit",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

ERC20_DECIMALS_ABI = [
    {
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
]

WITHDRAWAL_EVENT = "Withdrawal"
BRIDGE_EVENT = "Bridge"
OBSERVED_EVENTS = (WITHDRAWAL_EVENT, BRIDGE_EVENT)
