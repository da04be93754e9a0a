import json
import os
from dataclasses import dataclass
from typing import Dict

from . import crypto
from .tx import SignedTx


@dataclass
class Wallet:
    priv: Dict[str, int]

    @staticmethod
    def create() -> "Wallet":
        return Wallet(priv=crypto.generate_keypair())

    @property
    def pub(self) -> Dict[str, int]:
        return crypto.public_key(self.priv)

    @property
    def address(self) -> str:
        return crypto.address_from_pubkey(self.pub)

    @property
    def pub_key_bytes(self) -> bytes:
        return crypto.pubkey_to_bytes(self.pub)

    def sign_tx(self, tx: str, nonce: int) -> bytes:
        envelope = SignedTx(tx=tx, nonce=nonce, pubkey={})
        envelope.sign(self.priv)
        return envelope.to_bytes()

    def to_dict(self) -> Dict[str, object]:
        return {"algo": "ecdsa", "private_key": crypto.key_to_hex(self.priv)}

    @staticmethod
    def from_dict(data: Dict[str, object]) -> "Wallet":
        algo = str(data.get("algo", "ecdsa"))
        if algo != "ecdsa":
            raise ValueError("Only ecdsa wallets are supported.")
        key = data.get("private_key", {})
        return Wallet(priv=crypto.key_from_hex(key))

    def save(self, path: str) -> None:
        dir_name = os.path.dirname(path)
        if dir_name:
            os.makedirs(dir_name, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)

    @staticmethod
    def load(path: str) -> "Wallet":
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return Wallet.from_dict(data)
