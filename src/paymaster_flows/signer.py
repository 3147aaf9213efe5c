"""Signers for sponsored transactions."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import replace

from eth_account import Account
from eth_account.signers.local import LocalAccount

from .transaction import SponsoredTransaction

logger = logging.getLogger(__name__)


class TransactionSigner(ABC):
    """Abstract interface for whoever signs on behalf of the sender."""

    @property
    @abstractmethod
    def address(self) -> str:
        """Checksum address of the signing account."""

    @abstractmethod
    def sign_transaction(self, tx: SponsoredTransaction) -> SponsoredTransaction:
        """Return a copy of ``tx`` carrying the sender's signature."""


class LocalAccountSigner(TransactionSigner):
    """Private-key signer backed by eth_account."""

    def __init__(self, account: LocalAccount):
        self._account = account

    @classmethod
    def from_key(cls, private_key: str) -> "LocalAccountSigner":
        return cls(Account.from_key(private_key))

    @classmethod
    def create_random(cls) -> "LocalAccountSigner":
        """A throwaway wallet, as used for the empty-wallet demonstrations."""
        signer = cls(Account.create())
        logger.info(f"Created throwaway wallet {signer.address}")
        return signer

    @property
    def address(self) -> str:
        return self._account.address

    @property
    def private_key(self) -> str:
        return "0x" + bytes(self._account.key).hex()

    def sign_transaction(self, tx: SponsoredTransaction) -> SponsoredTransaction:
        if tx.from_address.lower() != self.address.lower():
            raise ValueError(
                f"Signer {self.address} cannot sign for {tx.from_address}"
            )
        signed = self._account.sign_message(tx.signable_message())
        return replace(tx, custom_signature=bytes(signed.signature))


def recover_sender(tx: SponsoredTransaction) -> str:
    """Recover the address that produced ``tx.custom_signature``."""
    if not tx.custom_signature:
        raise ValueError("Transaction is not signed")
    return Account.recover_message(tx.signable_message(), signature=tx.custom_signature)
