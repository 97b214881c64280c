"""
Contract ABI declarations for the escrow contracts.

This is the one source of truth for the on-chain interface. The factory and
vault method names are fixed by ``ABI_VERSION``; callers never try
alternative names at runtime. A contract upgrade that renames methods gets a
new ABI version here, not a fallback chain.

Interface ``escrow-v1``:

    EscrowFactory
        createEscrow(address payee) returns (address)
        createEscrowAndFund(address payee, address token, uint256 amount) payable returns (address)
        event EscrowCreated(address indexed escrow, address indexed payee, address token, uint256 amount)

    EscrowVault
        deposit() payable          native currency
        fund(uint256 amount)       ERC-20 pull, requires prior approve()
        release()                  payee or timer gated

Example:
    >>> from src.escrowpay.abi import ERC20, ESCROW_VAULT
    >>> ESCROW_VAULT.encode_call("release")
    '0x86d1a69f'
"""

from dataclasses import dataclass
from typing import Any, Iterable, Optional, Sequence, Union

from eth_abi import decode, encode
from web3 import Web3

ABI_VERSION = "escrow-v1"

ESCROW_FACTORY_ABI = [
    {
        "type": "function",
        "name": "createEscrow",
        "inputs": [{"name": "payee", "type": "address"}],
        "outputs": [{"name": "escrow", "type": "address"}],
        "stateMutability": "nonpayable",
    },
    {
        "type": "function",
        "name": "createEscrowAndFund",
        "inputs": [
            {"name": "payee", "type": "address"},
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "escrow", "type": "address"}],
        "stateMutability": "payable",
    },
    {
        "type": "event",
        "name": "EscrowCreated",
        "inputs": [
            {"name": "escrow", "type": "address", "indexed": True},
            {"name": "payee", "type": "address", "indexed": True},
            {"name": "token", "type": "address", "indexed": False},
            {"name": "amount", "type": "uint256", "indexed": False},
        ],
        "anonymous": False,
    },
]

ESCROW_VAULT_ABI = [
    {
        "type": "function",
        "name": "deposit",
        "inputs": [],
        "outputs": [],
        "stateMutability": "payable",
    },
    {
        "type": "function",
        "name": "fund",
        "inputs": [{"name": "amount", "type": "uint256"}],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
    {
        "type": "function",
        "name": "release",
        "inputs": [],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
]

ERC20_ABI = [
    {
        "type": "function",
        "name": "approve",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
    },
    {
        "type": "function",
        "name": "allowance",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
    },
]


def _to_bytes(value: Union[str, bytes]) -> bytes:
    if isinstance(value, str):
        return bytes.fromhex(value[2:] if value.startswith("0x") else value)
    return bytes(value)


def _to_hex(value: bytes) -> str:
    return "0x" + bytes(value).hex()


class ContractInterface:
    """Encoder/decoder bound to one declared ABI."""

    def __init__(self, name: str, abi: Sequence[dict]):
        self.name = name
        self.abi = abi
        self._functions = {entry["name"]: entry for entry in abi if entry["type"] == "function"}
        self._events = {entry["name"]: entry for entry in abi if entry["type"] == "event"}

    def _function(self, fn_name: str) -> dict:
        try:
            return self._functions[fn_name]
        except KeyError:
            raise ValueError(f"{self.name} ({ABI_VERSION}) declares no function {fn_name!r}") from None

    def input_types(self, fn_name: str) -> list[str]:
        return [arg["type"] for arg in self._function(fn_name)["inputs"]]

    def signature(self, fn_name: str) -> str:
        return f"{fn_name}({','.join(self.input_types(fn_name))})"

    def selector(self, fn_name: str) -> bytes:
        return bytes(Web3.keccak(text=self.signature(fn_name)))[:4]

    def is_payable(self, fn_name: str) -> bool:
        return self._function(fn_name)["stateMutability"] == "payable"

    def encode_call(self, fn_name: str, *args: Any) -> str:
        """ABI-encode a call as 0x-prefixed hex calldata."""
        types = self.input_types(fn_name)
        if len(args) != len(types):
            raise ValueError(f"{self.name}.{fn_name} takes {len(types)} arguments, got {len(args)}")

        normalized = [
            Web3.to_checksum_address(arg) if abi_type == "address" else arg
            for abi_type, arg in zip(types, args)
        ]
        return _to_hex(self.selector(fn_name) + encode(types, normalized))

    def decode_call(self, fn_name: str, data: Union[str, bytes]) -> tuple:
        """Decode calldata produced for ``fn_name``; raises ValueError on a selector mismatch."""
        raw = _to_bytes(data)
        if raw[:4] != self.selector(fn_name):
            raise ValueError(f"Calldata is not a {self.name}.{fn_name} call")
        return tuple(decode(self.input_types(fn_name), raw[4:]))

    def decode_output(self, fn_name: str, data: Union[str, bytes]) -> tuple:
        types = [arg["type"] for arg in self._function(fn_name)["outputs"]]
        return tuple(decode(types, _to_bytes(data)))

    def event_signature(self, event_name: str) -> str:
        event = self._events[event_name]
        return f"{event_name}({','.join(arg['type'] for arg in event['inputs'])})"

    def event_topic(self, event_name: str) -> str:
        return _to_hex(bytes(Web3.keccak(text=self.event_signature(event_name))))


ESCROW_FACTORY = ContractInterface("EscrowFactory", ESCROW_FACTORY_ABI)
ESCROW_VAULT = ContractInterface("EscrowVault", ESCROW_VAULT_ABI)
ERC20 = ContractInterface("ERC20", ERC20_ABI)


@dataclass(frozen=True)
class EscrowCreated:
    """Decoded ``EscrowCreated`` event; the escrow address was found."""

    escrow: str
    payee: str
    token: str
    amount: int
    log_index: Optional[int] = None


@dataclass(frozen=True)
class EscrowCreatedNotFound:
    """No ``EscrowCreated`` event from the expected factory was in the logs."""

    reason: str


EscrowCreatedResult = Union[EscrowCreated, EscrowCreatedNotFound]


def _topic_address(topic: Union[str, bytes]) -> str:
    return Web3.to_checksum_address(_to_bytes(topic)[-20:])


def decode_escrow_created(logs: Iterable[Any], factory_address: str) -> EscrowCreatedResult:
    """Find the escrow created by ``factory_address`` in a receipt's logs.

    Only logs emitted by the factory whose first topic is the declared
    ``EscrowCreated`` signature are considered; anything else is ignored.

    Args:
        logs: Receipt logs (web3 AttributeDicts or plain dicts).
        factory_address: Address of the factory that must have emitted the event.

    Returns:
        ``EscrowCreated`` for the first matching log, else ``EscrowCreatedNotFound``.
    """
    topic = _to_bytes(ESCROW_FACTORY.event_topic("EscrowCreated"))
    factory = factory_address.lower()
    seen = 0

    for log in logs:
        seen += 1
        if str(log["address"]).lower() != factory:
            continue
        topics = list(log["topics"])
        if len(topics) != 3 or _to_bytes(topics[0]) != topic:
            continue

        token, amount = decode(["address", "uint256"], _to_bytes(log["data"]))
        return EscrowCreated(
            escrow=_topic_address(topics[1]),
            payee=_topic_address(topics[2]),
            token=Web3.to_checksum_address(token),
            amount=amount,
            log_index=log.get("logIndex") if hasattr(log, "get") else None,
        )

    return EscrowCreatedNotFound(reason=f"No EscrowCreated event from {factory_address} in {seen} logs")
