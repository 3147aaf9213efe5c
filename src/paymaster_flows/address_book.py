"""
Deployment addresses and keys persisted in a dotenv file.

Setup steps record what they deploy with ``record``; flows only ever read.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

from dotenv import dotenv_values, set_key

from .errors import MissingConfigurationError

logger = logging.getLogger(__name__)

# field name -> accepted keys, first one wins
ENV_KEYS: Dict[str, tuple[str, ...]] = {
    "paymaster_address": ("PAYMASTER_ADDRESS",),
    "token_address": ("TOKEN_ADDRESS", "ERC20_TOKEN_ADDRESS"),
    "nft_address": ("ERC721_TOKEN_ADDRESS",),
    "loop_address": ("LOOP_CONTRACT_ADDRESS",),
    "empty_wallet_private_key": ("EMPTY_WALLET_PRIVATE_KEY",),
    "deployer_private_key": ("WALLET_PRIVATE_KEY",),
}


@dataclass(frozen=True)
class AddressBook:
    paymaster_address: Optional[str] = None
    token_address: Optional[str] = None
    nft_address: Optional[str] = None
    loop_address: Optional[str] = None
    empty_wallet_private_key: Optional[str] = None
    deployer_private_key: Optional[str] = None

    @classmethod
    def from_mapping(cls, values: Dict[str, Optional[str]]) -> "AddressBook":
        resolved: Dict[str, Optional[str]] = {}
        for name, keys in ENV_KEYS.items():
            resolved[name] = next((values[k] for k in keys if values.get(k)), None)
        return cls(**resolved)

    @classmethod
    def load(cls, path: Union[str, Path] = ".env") -> "AddressBook":
        """Read the address book. A missing file yields an empty book."""
        path = Path(path)
        if not path.exists():
            logger.debug(f"Address book {path} not found")
            return cls()
        return cls.from_mapping(dotenv_values(path))

    def require(self, *names: str) -> Tuple[str, ...]:
        """
        Return the values of ``names`` in order.

        Raises MissingConfigurationError naming every unset entry.
        """
        valid = {f.name for f in fields(self)}
        unknown = [n for n in names if n not in valid]
        if unknown:
            raise ValueError(f"Unknown address book fields: {', '.join(unknown)}")

        missing = [ENV_KEYS[n][0] for n in names if not getattr(self, n)]
        if missing:
            raise MissingConfigurationError(missing)
        return tuple(getattr(self, n) for n in names)

    @staticmethod
    def record(path: Union[str, Path], key: str, value: str) -> None:
        """Set ``key`` in the dotenv file, creating the file if needed."""
        path = Path(path)
        path.touch(exist_ok=True)
        set_key(str(path), key, value, quote_mode="never")
        logger.info(f"Recorded {key} in {path}")
