import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

CODE_OK = 0
CODE_ENCODING = 1
CODE_TX_TOO_LARGE = 2
CODE_BAD_NONCE = 3
CODE_UNAUTHORIZED = 4
CODE_UNSIGNED = 5
CODE_RESERVED_KEY = 6
CODE_INVALID_VALIDATOR = 7
CODE_NOT_FOUND = 8
CODE_UNKNOWN_PATH = 9
CODE_INVALID_HEIGHT = 10


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


def unb64(text: str) -> bytes:
    return base64.b64decode(text.encode(), validate=True)


class ProposalStatus(str, Enum):
    ACCEPT = "ACCEPT"
    REJECT = "REJECT"


class VerifyStatus(str, Enum):
    ACCEPT = "ACCEPT"
    REJECT = "REJECT"


class SnapshotResult(str, Enum):
    ACCEPT = "ACCEPT"
    ABORT = "ABORT"
    REJECT = "REJECT"


@dataclass
class EventAttribute:
    key: str
    value: str
    index: bool = True

    def to_dict(self) -> Dict[str, object]:
        return {"key": self.key, "value": self.value, "index": self.index}


@dataclass
class Event:
    type: str
    attributes: List[EventAttribute] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {"type": self.type, "attributes": [a.to_dict() for a in self.attributes]}


@dataclass
class ExecResult:
    code: int = CODE_OK
    data: bytes = b""
    log: str = ""
    info: str = ""
    gas_wanted: int = 0
    gas_used: int = 0
    events: List[Event] = field(default_factory=list)
    codespace: str = ""

    @property
    def ok(self) -> bool:
        return self.code == CODE_OK

    def to_dict(self) -> Dict[str, object]:
        return {
            "code": self.code,
            "data": b64(self.data),
            "log": self.log,
            "info": self.info,
            "gas_wanted": self.gas_wanted,
            "gas_used": self.gas_used,
            "events": [e.to_dict() for e in self.events],
            "codespace": self.codespace,
        }


@dataclass
class CheckTxResult:
    code: int = CODE_OK
    log: str = ""
    gas_wanted: int = 0
    codespace: str = ""

    @property
    def ok(self) -> bool:
        return self.code == CODE_OK

    def to_dict(self) -> Dict[str, object]:
        return {
            "code": self.code,
            "log": self.log,
            "gas_wanted": self.gas_wanted,
            "codespace": self.codespace,
        }


@dataclass
class ValidatorUpdate:
    pub_key: bytes
    power: int
    pub_key_type: str = "secp256k1"

    def to_dict(self) -> Dict[str, object]:
        return {
            "pub_key": b64(self.pub_key),
            "pub_key_type": self.pub_key_type,
            "power": self.power,
        }

    @staticmethod
    def from_dict(data: Dict[str, object]) -> "ValidatorUpdate":
        return ValidatorUpdate(
            pub_key=unb64(str(data["pub_key"])),
            power=int(data["power"]),
            pub_key_type=str(data.get("pub_key_type", "secp256k1")),
        )


@dataclass
class ConsensusParams:
    max_block_bytes: int = 0
    max_block_gas: int = -1

    def to_dict(self) -> Dict[str, object]:
        return {"max_block_bytes": self.max_block_bytes, "max_block_gas": self.max_block_gas}

    @staticmethod
    def from_dict(data: Dict[str, object]) -> "ConsensusParams":
        return ConsensusParams(
            max_block_bytes=int(data.get("max_block_bytes", 0)),
            max_block_gas=int(data.get("max_block_gas", -1)),
        )


@dataclass
class BlockUpdates:
    validator_updates: List[ValidatorUpdate] = field(default_factory=list)
    consensus_param_updates: Optional[ConsensusParams] = None
    events: List[Event] = field(default_factory=list)


@dataclass
class FinalizeBlockResult:
    tx_results: List[ExecResult]
    app_hash: bytes
    validator_updates: List[ValidatorUpdate] = field(default_factory=list)
    consensus_param_updates: Optional[ConsensusParams] = None
    events: List[Event] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        params = self.consensus_param_updates
        return {
            "tx_results": [r.to_dict() for r in self.tx_results],
            "app_hash": b64(self.app_hash),
            "validator_updates": [v.to_dict() for v in self.validator_updates],
            "consensus_param_updates": params.to_dict() if params else None,
            "events": [e.to_dict() for e in self.events],
        }


@dataclass
class CommitResult:
    retain_height: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {"retain_height": self.retain_height}


@dataclass
class InfoResult:
    data: str
    version: str
    app_version: int
    last_block_height: int
    last_block_app_hash: bytes

    def to_dict(self) -> Dict[str, object]:
        return {
            "data": self.data,
            "version": self.version,
            "app_version": self.app_version,
            "last_block_height": self.last_block_height,
            "last_block_app_hash": b64(self.last_block_app_hash),
        }


@dataclass
class InitChainResult:
    validators: List[ValidatorUpdate] = field(default_factory=list)
    consensus_params: Optional[ConsensusParams] = None
    app_hash: bytes = b""

    def to_dict(self) -> Dict[str, object]:
        params = self.consensus_params
        return {
            "validators": [v.to_dict() for v in self.validators],
            "consensus_params": params.to_dict() if params else None,
            "app_hash": b64(self.app_hash),
        }


@dataclass
class QueryResult:
    code: int = CODE_OK
    log: str = ""
    info: str = ""
    key: bytes = b""
    value: bytes = b""
    height: int = 0
    codespace: str = ""

    @property
    def ok(self) -> bool:
        return self.code == CODE_OK

    def to_dict(self) -> Dict[str, object]:
        return {
            "code": self.code,
            "log": self.log,
            "info": self.info,
            "key": b64(self.key),
            "value": b64(self.value),
            "height": self.height,
            "codespace": self.codespace,
        }


Write = Tuple[bytes, Optional[bytes]]
