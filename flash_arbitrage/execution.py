"""
Flash-loan arbitrage execution.

Handles:
- Nonce allocation shared by every venue trading from one wallet
- initiateFlashLoan payload building and signing
- Raw transaction submission and optional receipt confirmation
- Dry-run simulation
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Set

from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3, Web3
from web3.types import TxParams, Wei

from .config_loader import ExecutionConfig
from .contracts import ConfirmationEvent, FlashArbitrageContract
from .exceptions import ConfigurationError, ExecutionError
from .types import ArbitragePlan, Opportunity
from .utils import get_logger, shorten_address

logger = get_logger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40


@dataclass
class SubmittedTransaction:
    """A signed transaction accepted by the RPC node."""

    tx_hash: str
    nonce: int
    token_a_in: int
    gas_price: int
    plan: ArbitragePlan


@dataclass
class ExecutionResult:
    """
    Outcome of one execution attempt.

    Attributes:
        success: Whether the transaction was submitted (or simulated)
        opportunity: Opportunity that was executed
        tx_hash: Transaction hash, if submitted
        nonce: Nonce used, if one was allocated
        dry_run: True when nothing was signed or sent
        error: Error message, if failed
        stage: Stage that failed (nonce, sign, submit, ...)
        execution_time_ms: Time spent building and submitting
    """

    success: bool
    opportunity: Optional[Opportunity] = None
    tx_hash: Optional[str] = None
    nonce: Optional[int] = None
    dry_run: bool = False
    error: Optional[str] = None
    stage: Optional[str] = None
    execution_time_ms: Optional[float] = None


ResultCallback = Callable[[ExecutionResult], None]


class NonceAllocator:
    """
    Local nonce counter for one wallet.

    The pending transaction count is read on first use and after every
    invalidation; in between, nonces are handed out from the local counter.
    Nonces stay in flight from allocation until `release`, and a resync never
    goes below the highest one still in flight, since the node does not count
    a transaction before it has been sent.
    Callers must hold `lock` from allocation until the transaction is signed.
    """

    def __init__(self, web3: AsyncWeb3, address: str):
        self.web3 = web3
        self.address = address
        self.lock = asyncio.Lock()
        self._next_nonce: Optional[int] = None
        self._in_flight: Set[int] = set()

    @property
    def next_nonce(self) -> Optional[int]:
        return self._next_nonce

    @property
    def in_flight(self) -> Set[int]:
        return set(self._in_flight)

    async def allocate(self) -> int:
        if not self.lock.locked():
            raise RuntimeError("NonceAllocator.allocate() requires holding the lock")
        if self._next_nonce is None:
            # Snapshot before the await: a send finishing meanwhile releases its nonce
            floor = max(self._in_flight) + 1 if self._in_flight else 0
            pending = await self.web3.eth.get_transaction_count(self.address, "pending")
            self._next_nonce = max(pending, floor)
            logger.debug(
                f"Synchronized nonce for {shorten_address(self.address)}: {self._next_nonce} "
                f"(pending {pending}, {len(self._in_flight)} in flight)"
            )
        nonce = self._next_nonce
        self._next_nonce += 1
        self._in_flight.add(nonce)
        return nonce

    def release(self, nonce: int) -> None:
        """Mark a nonce as sent, or as abandoned after a failure."""
        self._in_flight.discard(nonce)

    def invalidate(self) -> None:
        """Force the next allocation to re-read the chain."""
        self._next_nonce = None


class ExecutionPipeline:
    """Turns profitable opportunities into signed initiateFlashLoan transactions."""

    def __init__(
        self,
        web3: AsyncWeb3,
        config: ExecutionConfig,
        chain_id: int,
        account: Optional[LocalAccount] = None,
        nonces: Optional[NonceAllocator] = None,
        contract_address: Optional[str] = None,
        venue_name: str = "",
        metrics: Any = None,
    ):
        """
        Args:
            web3: Async web3 instance; transport retries live in its provider
            config: Execution configuration
            chain_id: Chain the transactions are signed for
            account: Signing account, required unless dry-run
            nonces: Nonce allocator shared by every pipeline of the same wallet
            contract_address: Overrides config.contract_address
            venue_name: Used as log prefix and metrics label
            metrics: Optional ArbitrageMetrics
        """
        self.web3 = web3
        self.config = config
        self.chain_id = chain_id
        self.account = account
        self.nonces = nonces
        self.contract_address = contract_address or config.contract_address
        self.venue_name = venue_name
        self.metrics = metrics

        self.contract: Optional[FlashArbitrageContract] = None
        self.initialized = False
        self._confirmations: Set[asyncio.Task] = set()

        # Execution statistics
        self.executions_attempted = 0
        self.executions_successful = 0

    async def initialize(self) -> None:
        """
        Validate the signing setup and bind the arbitrage contract.

        Raises:
            ConfigurationError: If live execution lacks a contract, account
                or nonce allocator
        """
        if self.initialized:
            return

        address = self.contract_address
        if not address:
            if not self.config.dry_run:
                raise ConfigurationError("execution.contract_address is required for live execution")
            logger.warning(
                f"[{self.venue_name}] No arbitrage contract configured, dry-run encodes against {ZERO_ADDRESS}"
            )
            address = ZERO_ADDRESS
        try:
            self.contract = FlashArbitrageContract(address)
        except ValueError as e:
            raise ConfigurationError(f"Invalid arbitrage contract address {address!r}: {e}")

        if not self.config.dry_run:
            if self.account is None:
                raise ConfigurationError("A wallet private key is required for live execution")
            if self.nonces is None:
                raise ConfigurationError("A nonce allocator is required for live execution")

        self.initialized = True
        mode = "DRY RUN" if self.config.dry_run else "LIVE"
        logger.info(
            f"[{self.venue_name}] Execution pipeline ready ({mode}), "
            f"contract {shorten_address(self.contract.address)}"
        )

    async def _get_gas_price(self) -> Wei:
        """Get current gas price with ceiling."""
        current_gas_price = await self.web3.eth.gas_price
        max_gas_price = Web3.to_wei(self.config.max_gas_price_gwei, "gwei")

        # Use lower of current or max
        gas_price = min(current_gas_price, max_gas_price)

        logger.debug(
            f"Gas price: {Web3.from_wei(gas_price, 'gwei'):.2f} gwei "
            f"(current: {Web3.from_wei(current_gas_price, 'gwei'):.2f})"
        )
        return Wei(gas_price)

    def build_transaction(
        self, plan: ArbitragePlan, token_a_in: int, nonce: int, gas_price: int
    ) -> TxParams:
        calldata = self.contract.encode_initiate_flash_loan(plan, token_a_in)
        return {
            "to": self.contract.address,
            "value": Wei(0),
            "gas": self.config.gas_limit,
            "gasPrice": Wei(gas_price),
            "nonce": nonce,
            "chainId": self.chain_id,
            "data": Web3.to_hex(calldata),
        }

    async def submit(self, plan: ArbitragePlan, starting_amount: int) -> SubmittedTransaction:
        """
        Sign and send one initiateFlashLoan transaction.

        Nonce allocation, payload building and signing happen while holding
        the wallet's nonce lock; sending happens after it is released. Any
        failure after allocation invalidates the local nonce counter, and the
        nonce stays in flight until its send has finished.

        Raises:
            ExecutionError: If any stage fails
        """
        if not self.initialized:
            raise ExecutionError("Execution pipeline is not initialized", stage="initialize")
        if self.account is None or self.nonces is None:
            raise ExecutionError("No signing account configured", stage="sign")

        try:
            gas_price = await self._get_gas_price()
        except Exception as e:
            raise ExecutionError(f"Failed to get gas price: {e}", stage="gas_price") from e

        async with self.nonces.lock:
            try:
                nonce = await self.nonces.allocate()
            except Exception as e:
                self.nonces.invalidate()
                raise ExecutionError(f"Failed to read nonce: {e}", stage="nonce") from e
            try:
                tx = self.build_transaction(plan, starting_amount, nonce, gas_price)
                signed = self.account.sign_transaction(tx)
            except Exception as e:
                self.nonces.release(nonce)
                self.nonces.invalidate()
                raise ExecutionError(
                    f"Failed to sign transaction: {e}", stage="sign", nonce=nonce
                ) from e

        try:
            tx_hash = await self.web3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as e:
            self.nonces.invalidate()
            raise ExecutionError(
                f"Failed to send transaction: {e}", stage="submit", nonce=nonce
            ) from e
        finally:
            self.nonces.release(nonce)

        tx_hash_hex = Web3.to_hex(tx_hash)
        logger.info(
            f"[{self.venue_name}] Transaction submitted: {tx_hash_hex} "
            f"(nonce {nonce}, {plan.describe()}, tokenAIn={starting_amount})"
        )
        return SubmittedTransaction(
            tx_hash=tx_hash_hex,
            nonce=nonce,
            token_a_in=starting_amount,
            gas_price=gas_price,
            plan=plan,
        )

    async def confirm(self, submitted: SubmittedTransaction) -> List[ConfirmationEvent]:
        """Wait for the receipt and decode the contract's confirmation events."""
        receipt = await self.web3.eth.wait_for_transaction_receipt(
            submitted.tx_hash, timeout=self.config.confirmation_timeout
        )
        events = self.contract.decode_receipt_events(receipt)
        if receipt.get("status") == 0:
            logger.warning(f"[{self.venue_name}] Transaction {submitted.tx_hash} reverted")
        for event in events:
            logger.info(f"[{self.venue_name}] {type(event).__name__}: {event}")
        return events

    async def _confirm_in_background(self, submitted: SubmittedTransaction) -> None:
        try:
            await self.confirm(submitted)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                f"[{self.venue_name}] Could not confirm {submitted.tx_hash}: {e}"
            )

    async def execute(
        self, opportunity: Opportunity, on_result: Optional[ResultCallback] = None
    ) -> ExecutionResult:
        """
        Execute an opportunity; never raises.

        `on_result` is invoked exactly once with the returned result.
        """
        start_time = time.time()
        self.executions_attempted += 1

        try:
            result = await self._execute(opportunity)
        except ExecutionError as e:
            logger.error(f"[{self.venue_name}] Execution failed at {e.stage}: {e}")
            result = ExecutionResult(
                success=False,
                opportunity=opportunity,
                nonce=e.nonce,
                error=str(e),
                stage=e.stage,
            )
        except Exception as e:
            logger.error(f"[{self.venue_name}] Unexpected execution error: {e}", exc_info=True)
            result = ExecutionResult(
                success=False, opportunity=opportunity, error=str(e), stage="unexpected"
            )

        result.execution_time_ms = (time.time() - start_time) * 1000
        if result.success:
            self.executions_successful += 1
        if self.metrics is not None:
            self.metrics.record_execution(self.venue_name, result)

        if on_result is not None:
            try:
                on_result(result)
            except Exception as e:
                logger.error(f"[{self.venue_name}] Result callback failed: {e}", exc_info=True)
        return result

    async def _execute(self, opportunity: Opportunity) -> ExecutionResult:
        plan = opportunity.plan
        if plan is None:
            raise ExecutionError("Opportunity has no plan", stage="validate")
        token_a_in = int(opportunity.token_a_in)
        if token_a_in <= 0:
            raise ExecutionError(
                f"Starting amount must be positive, got {opportunity.token_a_in}",
                stage="validate",
            )

        if self.config.dry_run:
            if not self.initialized:
                raise ExecutionError("Execution pipeline is not initialized", stage="initialize")
            calldata = self.contract.encode_initiate_flash_loan(plan, token_a_in)
            logger.info(
                f"[{self.venue_name}] [DRY RUN] Would execute {plan.describe()} "
                f"with tokenAIn={token_a_in}, expectedProfit={opportunity.expected_profit} "
                f"({len(calldata)} bytes calldata)"
            )
            return ExecutionResult(success=True, opportunity=opportunity, dry_run=True)

        submitted = await self.submit(plan, token_a_in)
        if self.config.await_confirmation:
            task = asyncio.create_task(self._confirm_in_background(submitted))
            self._confirmations.add(task)
            task.add_done_callback(self._confirmations.discard)
        return ExecutionResult(
            success=True,
            opportunity=opportunity,
            tx_hash=submitted.tx_hash,
            nonce=submitted.nonce,
        )

    async def close(self) -> None:
        """Cancel pending receipt confirmations."""
        for task in list(self._confirmations):
            task.cancel()
        if self._confirmations:
            await asyncio.gather(*self._confirmations, return_exceptions=True)
        self._confirmations.clear()
