"""
Signers: who sends a transaction.

A Signer with a private key signs locally (eth_sendRawTransaction).
A Signer without one relies on the node holding the account unlocked
(eth_sendTransaction), as Hardhat and the dev chain do for their accounts.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from eth_account import Account
from web3 import Web3

logger = logging.getLogger("opfactory.signer")


@dataclass(frozen=True)
class Signer:
    address: str
    private_key: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_key(cls, private_key: str) -> "Signer":
        try:
            account = Account.from_key(private_key)
        except Exception as e:
            raise ValueError(f"Invalid private key: {e}")
        return cls(address=account.address, private_key=private_key)

    @property
    def can_sign(self) -> bool:
        return bool(self.private_key)

    def short(self) -> str:
        return self.address[:10] + "..."


def get_signers(w3: Web3, private_keys: Optional[Sequence[str]] = None) -> list[Signer]:
    """
    ethers.getSigners(): local keys if given, otherwise the node's accounts.
    """
    if private_keys:
        return [Signer.from_key(k) for k in private_keys]

    accounts = w3.eth.accounts
    if not accounts:
        logger.warning("Node exposes no unlocked accounts and no private keys were given")
    return [Signer(address=Web3.to_checksum_address(a)) for a in accounts]
