"""
Web3 client for the deployed arbitrage program.

Provides the two remote entry points the monitor needs in live mode:

- ``simulate_price_check``: read-only ``eth_call`` of the price check;
  returns the raw 16-byte price buffer.
- ``execute``: the execution trigger. The call is simulated first (its
  return data is the realized profit), then signed, submitted and awaited
  with a bounded receipt timeout. A failed execution is a full on-chain
  no-op, reported as a reverted outcome.
"""

import asyncio
import time
from typing import Any, Dict, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3Exception
from web3.types import TxParams, Wei

from flash_arbitrage.exceptions import (
    FailureKind,
    InvalidTokenAccount,
    NetworkError,
    SimulationError,
    failure_kind_of,
)
from flash_arbitrage.fixed_point import checked_add
from flash_arbitrage.utils import get_logger

from .fees import FeeModel
from .simulation import decode_profit, encode_execute, encode_price_check
from .types import Asset, ExecutionOutcome, ExecutionState, TokenPair

logger = get_logger(__name__)

DEFAULT_GAS_LIMIT = 800_000


def failure_kind_from_revert(message: str) -> FailureKind:
    """Classify a program revert reason such as 'execution reverted: slippage_exceeded'."""
    text = (message or "").lower()
    for kind in FailureKind:
        if kind.value in text:
            return kind
    return FailureKind.UNPROFITABLE


class ChainExecutionClient:
    """
    Remote simulation and execution through the deployed program.

    Args:
        web3: Connected Web3 instance
        program_address: Address of the arbitrage program
        fee_model: Used to report the repaid amount (loan + loan fee)
        private_key: Signing key; required for ``execute`` only
        chain_id: Chain id for signing (read from the node when omitted)
        timeout: Bound for each RPC call in seconds
        receipt_timeout: Bound for waiting on a receipt in seconds
        gas_limit: Gas limit for the execution transaction
    """

    def __init__(
        self,
        web3: Web3,
        program_address: str,
        fee_model: FeeModel,
        private_key: Optional[str] = None,
        chain_id: Optional[int] = None,
        timeout: float = 10.0,
        receipt_timeout: float = 60.0,
        gas_limit: int = DEFAULT_GAS_LIMIT,
    ):
        self.web3 = web3
        try:
            self.program_address = Web3.to_checksum_address(program_address)
        except ValueError as e:
            raise InvalidTokenAccount(f"Invalid program address: {program_address}") from e
        self.fee_model = fee_model
        self.chain_id = chain_id
        self.timeout = timeout
        self.receipt_timeout = receipt_timeout
        self.gas_limit = gas_limit

        self.account: Optional[LocalAccount] = None
        if private_key:
            self.account = Account.from_key(private_key)
            logger.info(f"Loaded account: {self.account.address}")

    async def _rpc(self, func, *args):
        """Run a blocking web3 call in the default executor with a timeout."""
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, func, *args), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            raise NetworkError(
                f"RPC call timed out after {self.timeout}s", endpoint=func.__name__
            ) from e

    def _call_params(self, data: bytes) -> Dict[str, Any]:
        params: Dict[str, Any] = {"to": self.program_address, "data": data}
        if self.account is not None:
            params["from"] = self.account.address
        return params

    async def simulate_price_check(
        self, input_asset: Asset, output_asset: Asset, amount: int
    ) -> bytes:
        """
        Read-only price check.

        Raises:
            SimulationError: If the node rejects or fails the call
        """
        data = encode_price_check(input_asset, output_asset, amount)
        try:
            result = await self._rpc(self.web3.eth.call, self._call_params(data))
        except (ContractLogicError, Web3Exception, OSError) as e:
            raise SimulationError(f"Price-check simulation failed: {e}") from e
        return bytes(result)

    async def _build_transaction(self, data: bytes) -> TxParams:
        address = self.account.address
        nonce = await self._rpc(self.web3.eth.get_transaction_count, address, "pending")
        gas_price = await self._rpc(lambda: self.web3.eth.gas_price)
        chain_id = self.chain_id
        if chain_id is None:
            chain_id = await self._rpc(lambda: self.web3.eth.chain_id)

        tx: TxParams = {
            "from": address,
            "to": self.program_address,
            "value": Wei(0),
            "gas": self.gas_limit,
            "gasPrice": gas_price,
            "nonce": nonce,
            "chainId": chain_id,
            "data": data,
        }
        return tx

    async def _wait_for_receipt(self, tx_hash: str) -> Dict:
        start = time.monotonic()

        while time.monotonic() - start < self.receipt_timeout:
            try:
                receipt = await self._rpc(self.web3.eth.get_transaction_receipt, tx_hash)
                if receipt:
                    return receipt
            except TransactionNotFound:
                pass

            await asyncio.sleep(1)

        raise NetworkError(
            f"Transaction {tx_hash} not confirmed after {self.receipt_timeout}s",
            endpoint="eth_getTransactionReceipt",
        )

    async def execute(
        self, pair: TokenPair, fee_model: Optional[FeeModel] = None
    ) -> ExecutionOutcome:
        """
        Trigger the atomic execution for ``pair`` on chain.

        ``fee_model`` is accepted for parity with the in-process
        orchestrator; the program re-verifies profitability itself.
        """
        if self.account is None:
            return ExecutionOutcome.reverted(
                FailureKind.INVALID_TOKEN_ACCOUNT, "No signing key loaded"
            )

        data = encode_execute(pair.input_asset, pair.output_asset, pair.loan_amount)

        try:
            profit_word = await self._rpc(self.web3.eth.call, self._call_params(data))
            expected_profit = decode_profit(bytes(profit_word))
        except ContractLogicError as e:
            kind = failure_kind_from_revert(str(e))
            logger.info(f"{pair.pair_id}: simulation reverted ({kind.value}): {e}")
            return ExecutionOutcome.reverted(kind, str(e))
        except Exception as e:
            kind = failure_kind_of(e)
            logger.warning(f"{pair.pair_id}: simulation failed ({kind.value}): {e}")
            return ExecutionOutcome.reverted(kind, str(e))

        try:
            tx = await self._build_transaction(data)
            signed = self.account.sign_transaction(tx)
            tx_hash = Web3.to_hex(
                await self._rpc(self.web3.eth.send_raw_transaction, signed.raw_transaction)
            )
            logger.info(f"{pair.pair_id}: waiting for tx {tx_hash}...")
            receipt = await self._wait_for_receipt(tx_hash)
        except Exception as e:
            kind = failure_kind_of(e)
            logger.error(f"{pair.pair_id}: submission failed ({kind.value}): {e}")
            return ExecutionOutcome.reverted(kind, str(e))

        if receipt.get("status") != 1:
            logger.warning(f"{pair.pair_id}: tx {tx_hash} reverted on chain")
            outcome = ExecutionOutcome.reverted(
                FailureKind.UNPROFITABLE, f"Transaction {tx_hash} reverted"
            )
            outcome.tx_hash = tx_hash
            return outcome

        model = fee_model or self.fee_model
        repaid = checked_add(pair.loan_amount, model.loan_fee_strict(pair.loan_amount))
        state = (
            ExecutionState.PROFIT_TRANSFERRED if expected_profit > 0 else ExecutionState.REPAID
        )
        logger.info(
            f"{pair.pair_id}: executed in tx {tx_hash}, profit {expected_profit}"
        )
        return ExecutionOutcome(
            success=True,
            realized_profit=expected_profit,
            state=state,
            repaid_amount=repaid,
            tx_hash=tx_hash,
        )
