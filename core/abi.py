"""
Embedded ABIs for Operation and OperationFactory.

Only the surface the client and the dev chain use. Compiled artifacts
(see core/artifacts.py) may carry more entries; the client never needs them.
"""

EVENT_CONTRACT_DEPLOYED = "ContractDeployed"

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


# ============================================================
# OPERATION (template)
# ============================================================

OPERATION_ABI = [
    {"inputs": [], "stateMutability": "nonpayable", "type": "constructor"},
    # initialize(bytes args): args = abi.encode(controller, terraAddress, owner, operator)
    {
        "inputs": [{"name": "args", "type": "bytes"}],
        "name": "initialize",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "controller",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "terraAddress",
        "outputs": [{"name": "", "type": "bytes32"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "owner",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "operator",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
]

# Parameter tuple decoded by Operation.initialize
OPERATION_INIT_TYPES = ["address", "bytes32", "address", "address"]


# ============================================================
# OPERATION FACTORY
# ============================================================

OPERATION_FACTORY_ABI = [
    {"inputs": [], "stateMutability": "nonpayable", "type": "constructor"},
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "previousOwner", "type": "address"},
            {"indexed": True, "name": "newOwner", "type": "address"},
        ],
        "name": "OwnershipTransferred",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "previousOperator", "type": "address"},
            {"indexed": True, "name": "newOperator", "type": "address"},
        ],
        "name": "OperatorTransferred",
        "type": "event",
    },
    # ContractDeployed: first log of every successful build()
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "deployer", "type": "address"},
            {"indexed": True, "name": "terraAddress", "type": "bytes32"},
            {"indexed": False, "name": "instance", "type": "address"},
        ],
        "name": EVENT_CONTRACT_DEPLOYED,
        "type": "event",
    },
    {
        "inputs": [],
        "name": "owner",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "operator",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "newOwner", "type": "address"}],
        "name": "transferOwnership",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "newOperator", "type": "address"}],
        "name": "transferOperator",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "", "type": "uint256"}],
        "name": "standards",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "optId", "type": "uint256"},
            {"name": "operation", "type": "address"},
        ],
        "name": "setStandardOperation",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "addrs", "type": "bytes32[]"}],
        "name": "pushTerraAddresses",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "fetchNextTerraAddress",
        "outputs": [{"name": "", "type": "bytes32"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "remainingTerraAddresses",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    # build(uint256 optId, address controller) → instance
    {
        "inputs": [
            {"name": "optId", "type": "uint256"},
            {"name": "controller", "type": "address"},
        ],
        "name": "build",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


def abi_signature(entry: dict) -> str:
    """Canonical signature, e.g. 'build(uint256,address)'."""
    types = ",".join(_canonical_type(i) for i in entry.get("inputs", []))
    return f"{entry['name']}({types})"


def _canonical_type(param: dict) -> str:
    typ = param["type"]
    if typ.startswith("tuple"):
        inner = ",".join(_canonical_type(c) for c in param["components"])
        return f"({inner}){typ[len('tuple'):]}"
    return typ
