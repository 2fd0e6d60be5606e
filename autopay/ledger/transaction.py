"""
Programmable transaction model.

A Transaction is an ordered list of commands executed atomically by the ledger.
Commands refer to each other's outputs through handles:

    Result(i)            all outputs of command i (single-output commands)
    NestedResult(i, j)   output j of multi-output command i

Every value-carrying output must be consumed by a later command (passed as an
argument or transferred), otherwise the whole transaction aborts.

The signed payload is the canonical JSON encoding returned by to_bytes().
"""
import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from autopay.domain.models import EventEnvelope
from autopay.exceptions import ValidationError

TX_FORMAT_VERSION = 1


@dataclass(frozen=True)
class Input:
    kind: str  # pure | object
    value: Any


@dataclass(frozen=True)
class NestedResult:
    index: int
    sub: int


@dataclass(frozen=True)
class Result:
    index: int

    def __getitem__(self, sub: int) -> NestedResult:
        return NestedResult(self.index, sub)


Argument = Union[Input, Result, NestedResult]


@dataclass(frozen=True)
class MoveCall:
    target: str
    arguments: Tuple[Argument, ...] = ()
    type_arguments: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TransferObjects:
    objects: Tuple[Argument, ...]
    recipient: Input


Command = Union[MoveCall, TransferObjects]


@dataclass
class TransactionEffects:
    """Outcome of submitting a transaction."""
    digest: str
    status: str  # success | failure
    gas_used: int = 0
    error: Optional[str] = None
    events: List[EventEnvelope] = field(default_factory=list)
    created: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


class Transaction:
    """Builder for a programmable transaction."""

    def __init__(self):
        self.commands: List[Command] = []
        self.sender: Optional[str] = None
        self.gas_owner: Optional[str] = None
        self.gas_budget: Optional[int] = None

    # ============ INPUTS ============

    @staticmethod
    def pure(value: Any) -> Input:
        return Input("pure", value)

    @staticmethod
    def object(object_id: str) -> Input:
        return Input("object", object_id)

    # ============ COMMANDS ============

    def move_call(
        self,
        target: str,
        arguments: Sequence[Argument] = (),
        type_arguments: Sequence[str] = (),
    ) -> Result:
        self.commands.append(MoveCall(target, tuple(arguments), tuple(type_arguments)))
        return Result(len(self.commands) - 1)

    def transfer_objects(self, objects: Sequence[Argument], recipient: str) -> None:
        if not objects:
            raise ValidationError("transfer_objects requires at least one object")
        self.commands.append(TransferObjects(tuple(objects), self.pure(recipient)))

    # ============ GAS / SENDER ============

    def set_sender(self, address: str) -> None:
        self.sender = address

    def set_gas_owner(self, address: str) -> None:
        self.gas_owner = address

    def set_gas_budget(self, budget: int) -> None:
        self.gas_budget = int(budget)

    @property
    def effective_gas_owner(self) -> Optional[str]:
        return self.gas_owner or self.sender

    # ============ ENCODING ============

    def to_data(self) -> Dict[str, Any]:
        return {
            "version": TX_FORMAT_VERSION,
            "sender": self.sender,
            "gasOwner": self.effective_gas_owner,
            "gasBudget": self.gas_budget,
            "commands": [_encode_command(c) for c in self.commands],
        }

    def to_bytes(self) -> bytes:
        """Canonical bytes to sign. Requires sender and gas budget."""
        if not self.sender:
            raise ValidationError("Transaction sender is not set")
        if self.gas_budget is None:
            raise ValidationError("Transaction gas budget is not set")
        return json.dumps(self.to_data(), sort_keys=True, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> "Transaction":
        try:
            data = json.loads(raw.decode("utf-8"))
            if data.get("version") != TX_FORMAT_VERSION:
                raise ValidationError(f"Unsupported transaction version: {data.get('version')!r}")
            tx = cls()
            tx.sender = data["sender"]
            tx.gas_owner = data["gasOwner"]
            tx.gas_budget = int(data["gasBudget"])
            tx.commands = [_decode_command(c) for c in data["commands"]]
        except (UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
            raise ValidationError(f"Malformed transaction bytes: {e}") from e
        return tx


def transaction_digest(tx_bytes: bytes) -> str:
    return "0x" + hashlib.sha256(tx_bytes).hexdigest()


def _encode_arg(arg: Argument) -> Dict[str, Any]:
    if isinstance(arg, Input):
        return {"Input": {"kind": arg.kind, "value": arg.value}}
    if isinstance(arg, NestedResult):
        return {"NestedResult": [arg.index, arg.sub]}
    if isinstance(arg, Result):
        return {"Result": arg.index}
    raise ValidationError(f"Unsupported argument: {arg!r}")


def _decode_arg(raw: Dict[str, Any]) -> Argument:
    if "Input" in raw:
        return Input(raw["Input"]["kind"], raw["Input"]["value"])
    if "NestedResult" in raw:
        index, sub = raw["NestedResult"]
        return NestedResult(int(index), int(sub))
    if "Result" in raw:
        return Result(int(raw["Result"]))
    raise ValueError(f"unknown argument encoding {raw!r}")


def _encode_command(command: Command) -> Dict[str, Any]:
    if isinstance(command, MoveCall):
        return {
            "MoveCall": {
                "target": command.target,
                "arguments": [_encode_arg(a) for a in command.arguments],
                "typeArguments": list(command.type_arguments),
            }
        }
    return {
        "TransferObjects": {
            "objects": [_encode_arg(a) for a in command.objects],
            "recipient": _encode_arg(command.recipient),
        }
    }


def _decode_command(raw: Dict[str, Any]) -> Command:
    if "MoveCall" in raw:
        body = raw["MoveCall"]
        return MoveCall(
            target=body["target"],
            arguments=tuple(_decode_arg(a) for a in body["arguments"]),
            type_arguments=tuple(body.get("typeArguments", [])),
        )
    if "TransferObjects" in raw:
        body = raw["TransferObjects"]
        recipient = _decode_arg(body["recipient"])
        if not isinstance(recipient, Input):
            raise ValueError("transfer recipient must be a pure input")
        return TransferObjects(tuple(_decode_arg(a) for a in body["objects"]), recipient)
    raise ValueError(f"unknown command encoding {raw!r}")
