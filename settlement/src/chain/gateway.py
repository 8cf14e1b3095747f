import asyncio
import logging
import aiohttp
from typing import Any, Callable, Protocol
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from fastapi import Request
from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3, AsyncHTTPProvider
from web3.contract.async_contract import AsyncContractFunction
from web3.exceptions import Web3Exception, Web3RPCError, TimeExhausted

from .abi import ERC20_ABI, POINTS_ABI
from settings import ChainSettings


logger = logging.getLogger('settlement-chain-gateway')

_TRANSPORT_ERRORS = (Web3Exception, aiohttp.ClientError, OSError)


class ChainError(Exception):
    ...


class ChainReadError(ChainError):
    """Read failed, safe to retry"""


class ChainSubmissionError(ChainError):
    """Transaction was rejected before broadcast, nothing happened on-chain"""


class ChainOutcomeUnknown(ChainError):
    """Transaction may have been broadcast; reconcile against the chain before resubmitting"""

    def __init__(self, tx_hash: str, reason: str):
        super().__init__(f'outcome of {tx_hash} is unknown: {reason}')
        self.tx_hash = tx_hash


class ConfirmationTimeout(ChainOutcomeUnknown):
    ...


class TransactionReverted(ChainError):
    def __init__(self, tx_hash: str):
        super().__init__(f'transaction {tx_hash} reverted')
        self.tx_hash = tx_hash


class SignerState(Protocol):
    nonce: int


# Holds the signing address exclusively for the block; the yielded `nonce` is the next one to use
SignerLock = Callable[[str], AbstractAsyncContextManager[SignerState]]


@dataclass
class _LocalSignerState:
    nonce: int = 0


class ChainGateway:
    """Reads and writes against one settlement chain with the platform's executor key.

    All transactions signed with the key go through `_submit`, which holds the
    signer lock for the whole build-sign-send sequence. With the database-backed
    lock every process shares one nonce sequence; without one, nonces are only
    serialized within this process. Reads are not serialized.
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        account: LocalAccount,
        chain_id: int,
        token_address: str,
        treasury_address: str,
        points_contract_address: str | None = None,
        confirmation_timeout: float = 120.0,
        signer_lock: SignerLock | None = None
    ):
        self.w3 = w3
        self.account = account
        self.chain_id = chain_id
        self.treasury_address = AsyncWeb3.to_checksum_address(treasury_address)
        self.token = w3.eth.contract(address=AsyncWeb3.to_checksum_address(token_address), abi=ERC20_ABI)
        self.points = (
            w3.eth.contract(address=AsyncWeb3.to_checksum_address(points_contract_address), abi=POINTS_ABI)
            if points_contract_address else None
        )
        self.confirmation_timeout = confirmation_timeout

        self._submit_lock = asyncio.Lock()
        self._local_signer = _LocalSignerState()
        self._lock_signer = signer_lock or self._lock_local_signer

    @asynccontextmanager
    async def _lock_local_signer(self, address: str):
        yield self._local_signer

    @classmethod
    def from_settings(cls, chain_settings: ChainSettings, signer_lock: SignerLock | None = None) -> 'ChainGateway':
        if chain_settings.executor_private_key is None:
            raise RuntimeError('executor private key is not configured')

        w3 = AsyncWeb3(AsyncHTTPProvider(
            chain_settings.rpc_url,
            request_kwargs={'timeout': aiohttp.ClientTimeout(total=chain_settings.request_timeout_sec)}
        ))
        return cls(
            w3=w3,
            account=Account.from_key(chain_settings.executor_private_key.get_secret_value()),
            chain_id=chain_settings.chain_id,
            token_address=chain_settings.token_address,
            treasury_address=chain_settings.treasury_address,
            points_contract_address=chain_settings.points_contract_address,
            confirmation_timeout=chain_settings.confirmation_timeout_sec,
            signer_lock=signer_lock
        )

    @property
    def address(self) -> str:
        return self.account.address

    @property
    def token_address(self) -> str:
        return self.token.address

    async def read_allowance(self, owner: str) -> int:
        try:
            return await self.token.functions.allowance(
                AsyncWeb3.to_checksum_address(owner),
                self.account.address
            ).call()
        except _TRANSPORT_ERRORS as e:
            raise ChainReadError(f'couldn\'t read allowance of {owner}: {e!r}') from e

    async def read_balance(self, owner: str) -> int:
        try:
            return await self.token.functions.balanceOf(AsyncWeb3.to_checksum_address(owner)).call()
        except _TRANSPORT_ERRORS as e:
            raise ChainReadError(f'couldn\'t read balance of {owner}: {e!r}') from e

    async def pull_transfer(self, owner: str, amount: int) -> str:
        """`transferFrom(owner, treasury, amount)`, requires an allowance granted to the executor"""
        return await self._submit(self.token.functions.transferFrom(
            AsyncWeb3.to_checksum_address(owner),
            self.treasury_address,
            amount
        ))

    async def award_points(self, to: str, amount: int) -> str:
        if self.points is None:
            raise ChainSubmissionError('points contract is not configured')

        return await self._submit(self.points.functions.award(AsyncWeb3.to_checksum_address(to), amount))

    async def wait_for_confirmation(self, tx_hash: str) -> dict[str, Any]:
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash,  # type: ignore
                timeout=self.confirmation_timeout
            )
        except TimeExhausted as e:
            raise ConfirmationTimeout(tx_hash, f'no receipt after {self.confirmation_timeout}s') from e
        except _TRANSPORT_ERRORS as e:
            raise ChainOutcomeUnknown(tx_hash, f'couldn\'t fetch receipt: {e!r}') from e

        if receipt['status'] == 0:
            raise TransactionReverted(tx_hash)

        return dict(receipt)

    async def _submit(self, function: AsyncContractFunction) -> str:
        tx_hash: str | None = None

        async with self._submit_lock:
            try:
                async with self._lock_signer(self.account.address) as signer:
                    tx_hash = await self._sign_and_send(function, signer)
            except Exception:
                if tx_hash is None:
                    raise
                # Already broadcast; the next submission picks the nonce up from the pending count
                logger.exception(f'couldn\'t store the next nonce after broadcasting {tx_hash}')

        return tx_hash

    async def _sign_and_send(self, function: AsyncContractFunction, signer: SignerState) -> str:
        try:
            # The stored nonce covers a node that doesn't see another process's transaction yet,
            # the pending count covers transactions sent outside this service
            pending = await self.w3.eth.get_transaction_count(self.account.address, 'pending')
            nonce = max(signer.nonce, pending)

            tx = await function.build_transaction({
                'from': self.account.address,
                'nonce': nonce,
                'chainId': self.chain_id
            })
        except _TRANSPORT_ERRORS as e:
            # Gas estimation also fails here when the call would revert
            raise ChainSubmissionError(f'couldn\'t build {function.fn_name}: {e!r}') from e

        signed = self.account.sign_transaction(tx)
        tx_hash = AsyncWeb3.to_hex(signed.hash)

        try:
            await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except Web3RPCError as e:
            raise ChainSubmissionError(f'node rejected {function.fn_name} {tx_hash}: {e!r}') from e
        except _TRANSPORT_ERRORS as e:
            # The node may have accepted it before the connection broke
            raise ChainOutcomeUnknown(tx_hash, f'broadcast of {function.fn_name} was interrupted: {e!r}') from e

        signer.nonce = nonce + 1
        logger.info(f'broadcast {function.fn_name} {tx_hash} with nonce {nonce}')
        return tx_hash


def get_chain_gateway(request: Request) -> ChainGateway:
    return request.app.state.chain_gateway
