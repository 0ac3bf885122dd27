"""
Wallet key file storage.

Participant wallets live in a JSON file as base58 encoded 64 byte secrets.
When a passphrase is configured the secrets are AES-GCM encrypted with a
PBKDF2-SHA256 derived key and the file records the salt.
"""

import json
import os
from typing import List, Optional

import base58
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from loguru import logger
from solders.keypair import Keypair

from bundler.solana.errors import KeyMaterialError

WALLET_FILE_NAME = "bundler.json"
MINT_FILE_NAME = "mint.json"
PBKDF2_ITERATIONS = 100000


def decode_keypair(encoded: str) -> Keypair:
    """
    Decode a base58 encoded 64 byte secret key.

    Args:
        encoded: Base58 secret key

    Returns:
        The keypair

    Raises:
        KeyMaterialError: If the key does not decode
    """
    try:
        return Keypair.from_bytes(base58.b58decode(encoded.strip()))
    except ValueError as e:
        raise KeyMaterialError(f"Invalid private key format: {e}") from e


def encode_keypair(keypair: Keypair) -> str:
    return base58.b58encode(bytes(keypair)).decode("utf-8")


def _derive_key(passphrase: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(passphrase.encode("utf-8"))


class BundlerWalletStorage:
    """Loads and saves the participant wallet file."""

    def __init__(self, wallets_dir: str = "wallets", passphrase: Optional[str] = None):
        """
        Initialize the wallet storage.

        Args:
            wallets_dir: Directory holding the wallet file
            passphrase: Optional passphrase encrypting the stored secrets
        """
        self.wallets_dir = wallets_dir
        self.path = os.path.join(wallets_dir, WALLET_FILE_NAME)
        self.passphrase = passphrase

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def _encrypt(self, aesgcm: AESGCM, secret: bytes) -> str:
        nonce = os.urandom(12)
        return base58.b58encode(nonce + aesgcm.encrypt(nonce, secret, None)).decode("utf-8")

    def _decrypt(self, aesgcm: AESGCM, encoded: str) -> bytes:
        blob = base58.b58decode(encoded)
        try:
            return aesgcm.decrypt(blob[:12], blob[12:], None)
        except InvalidTag as e:
            raise KeyMaterialError("Wallet file could not be decrypted, check WALLET_PASSPHRASE") from e

    def save(self, keypairs: List[Keypair]) -> str:
        """
        Write the wallets to disk.

        Args:
            keypairs: Participant keypairs

        Returns:
            Path of the wallet file
        """
        os.makedirs(self.wallets_dir, exist_ok=True)

        if self.passphrase:
            salt = os.urandom(16)
            aesgcm = AESGCM(_derive_key(self.passphrase, salt))
            payload = {
                "encrypted": True,
                "salt": salt.hex(),
                "keys": [self._encrypt(aesgcm, bytes(kp)) for kp in keypairs],
            }
        else:
            payload = [encode_keypair(kp) for kp in keypairs]

        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)

        logger.info(
            f"Saved {len(keypairs)} bundler wallets to {self.path}",
            extra={"path": self.path, "count": len(keypairs), "encrypted": bool(self.passphrase)}
        )
        return self.path

    def load(self) -> Optional[List[Keypair]]:
        """
        Read the wallets from disk.

        Returns:
            The stored keypairs, or None if the file does not exist

        Raises:
            KeyMaterialError: If the file or a key does not decode
        """
        if not self.exists():
            return None

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except json.JSONDecodeError as e:
            raise KeyMaterialError(f"Wallet file {self.path} is not valid JSON") from e

        if isinstance(payload, list):
            keypairs = [decode_keypair(encoded) for encoded in payload]
        elif isinstance(payload, dict) and payload.get("encrypted"):
            if not self.passphrase:
                raise KeyMaterialError(f"Wallet file {self.path} is encrypted but no passphrase is set")
            aesgcm = AESGCM(_derive_key(self.passphrase, bytes.fromhex(payload["salt"])))
            keypairs = []
            for encoded in payload.get("keys", []):
                try:
                    keypairs.append(Keypair.from_bytes(self._decrypt(aesgcm, encoded)))
                except ValueError as e:
                    raise KeyMaterialError(f"Invalid key in {self.path}: {e}") from e
        else:
            raise KeyMaterialError(f"Unrecognized wallet file format in {self.path}")

        logger.info(f"Loaded {len(keypairs)} bundler wallets from {self.path}")
        return keypairs

    @property
    def mint_path(self) -> str:
        return os.path.join(self.wallets_dir, MINT_FILE_NAME)

    def save_mint(self, keypair: Keypair) -> str:
        """Keep the mint keypair of a launch so the run can be resumed."""
        os.makedirs(self.wallets_dir, exist_ok=True)
        with open(self.mint_path, "w", encoding="utf-8") as f:
            json.dump({"mint": str(keypair.pubkey()), "secret": encode_keypair(keypair)}, f, indent=2)
        logger.info(f"Saved mint keypair {keypair.pubkey()} to {self.mint_path}")
        return self.mint_path

    def load_mint(self) -> Optional[Keypair]:
        if not os.path.exists(self.mint_path):
            return None
        with open(self.mint_path, "r", encoding="utf-8") as f:
            payload = json.load(f)
        return decode_keypair(payload["secret"])
