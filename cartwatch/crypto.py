"""Symmetric encryption for webhook URLs and stored card data."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Protocol

from cryptography.fernet import Fernet, InvalidToken

from cartwatch.errors import CartwatchError, DecryptionError

ENCRYPTION_KEY_ENV = "CARTWATCH_ENCRYPTION_KEY"


class Cipher(Protocol):
    def encrypt(self, plaintext: str) -> str:
        ...

    def decrypt(self, ciphertext: str) -> str:
        ...


class FernetCipher:
    """:class:`Cipher` backed by ``cryptography``'s Fernet recipe."""

    def __init__(self, key: str | bytes) -> None:
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)

    @classmethod
    def from_env(cls) -> "FernetCipher":
        key = os.getenv(ENCRYPTION_KEY_ENV)
        if not key:
            raise CartwatchError(
                f"{ENCRYPTION_KEY_ENV} is not set; generate one with "
                "`python -c 'from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())'`"
            )
        return cls(key)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, ValueError) as exc:
            raise DecryptionError("Unable to decrypt value with the configured key") from exc


@dataclass(frozen=True)
class PaymentCard:
    card_number: str
    cvc: str
    expiry: str | None
    cardholder_name: str | None
    last4: str
    is_prepaid: bool = False
    balance: float | None = None


def encrypt_card_data(cipher: Cipher, card: PaymentCard) -> dict[str, Any]:
    """Return column values for a ``payment_methods`` row."""

    digits = "".join(ch for ch in card.card_number if ch.isdigit())
    return {
        "encrypted_number": cipher.encrypt(digits),
        "encrypted_cvc": cipher.encrypt(card.cvc),
        "last4": card.last4 or digits[-4:],
        "expiry": card.expiry,
        "cardholder_name": card.cardholder_name,
        "is_prepaid": card.is_prepaid,
        "balance": card.balance if card.is_prepaid else None,
    }


def decrypt_card_data(cipher: Cipher, record: Any) -> PaymentCard:
    """Rebuild a :class:`PaymentCard` from a stored ``payment_methods`` row."""

    return PaymentCard(
        card_number=cipher.decrypt(record.encrypted_number),
        cvc=cipher.decrypt(record.encrypted_cvc),
        expiry=record.expiry,
        cardholder_name=record.cardholder_name,
        last4=record.last4,
        is_prepaid=bool(record.is_prepaid),
        balance=record.balance,
    )
