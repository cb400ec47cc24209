"""RSA keys of local users (signing) and remote actors (verification)."""
from typing import Any

from Crypto.PublicKey import RSA

KEY_SIZE = 2048


def _to_pem(k: RSA.RsaKey) -> str:
    return k.export_key("PEM").decode("utf-8")


def generate_key() -> str:
    """Returns a new RSA private key as PEM."""
    return _to_pem(RSA.generate(KEY_SIZE))


class Key(object):
    def __init__(self, owner: str, id_: str | None = None) -> None:
        self.owner = owner
        self.id_ = id_
        self.privkey: RSA.RsaKey | None = None
        self.pubkey: RSA.RsaKey | None = None
        self.pubkey_pem: str | None = None

    @property
    def can_sign(self) -> bool:
        return self.privkey is not None

    def load_pub(self, pubkey_pem: str) -> None:
        # The PEM is kept as received, it is republished in actor documents
        self.pubkey = RSA.import_key(pubkey_pem)
        self.pubkey_pem = pubkey_pem

    def load(self, privkey_pem: str) -> None:
        self.privkey = RSA.import_key(privkey_pem)
        self.pubkey = self.privkey.public_key()
        self.pubkey_pem = _to_pem(self.pubkey)

    def new(self) -> None:
        self.load(generate_key())

    def key_id(self) -> str:
        return self.id_ or f"{self.owner}#main-key"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.key_id(),
            "owner": self.owner,
            "publicKeyPem": self.pubkey_pem,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Key":
        """Loads a standalone `Key` document, or the key embedded in an actor."""
        if data.get("type") != "Key" and isinstance(data.get("publicKey"), dict):
            data = {**data["publicKey"], "owner": data.get("id")}

        try:
            k = cls(data["owner"], data["id"])
            k.load_pub(data["publicKeyPem"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"bad key data {data!r}") from exc
        return k
