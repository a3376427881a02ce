from __future__ import annotations

import unicodedata
from dataclasses import dataclass

from mnemonic import Mnemonic
from solders.keypair import Keypair

from soldrip.services.drip_errors import ConfigurationError

SOLANA_DERIVATION_PATH = "m/44'/501'/0'/0'"
VALID_WORD_COUNTS = frozenset({12, 15, 18, 21, 24})

_WORDLIST = Mnemonic("english")


@dataclass(frozen=True)
class WalletIdentity:
    label: str
    keypair: Keypair

    @property
    def public_key(self) -> str:
        return str(self.keypair.pubkey())


def normalize_mnemonic(mnemonic: str) -> str:
    words = unicodedata.normalize("NFKD", mnemonic).strip().lower().split()
    if len(words) not in VALID_WORD_COUNTS:
        raise ConfigurationError(
            f"mnemonic must have 12, 15, 18, 21 or 24 words, got {len(words)}"
        )
    normalized = " ".join(words)
    # The message never echoes the words themselves.
    if not _WORDLIST.check(normalized):
        raise ConfigurationError("mnemonic failed BIP-39 wordlist/checksum validation")
    return normalized


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    return Mnemonic.to_seed(normalize_mnemonic(mnemonic), passphrase=passphrase)


def derive_keypair(mnemonic: str, path: str = SOLANA_DERIVATION_PATH) -> Keypair:
    try:
        return Keypair.from_seed_and_derivation_path(mnemonic_to_seed(mnemonic), path)
    except ValueError as exc:
        raise ConfigurationError(f"invalid derivation path {path}: {exc}") from exc


def load_wallet(label: str, mnemonic: str) -> WalletIdentity:
    return WalletIdentity(label=label, keypair=derive_keypair(mnemonic))
