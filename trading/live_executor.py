"""On-chain swap execution through a UniswapV2-compatible router."""

from __future__ import annotations

import logging
import time
from typing import Any

from eth_account import Account
from web3 import HTTPProvider, Web3
from web3.contract import Contract

import config
from trading.venue import ZERO_BALANCE, SwapResult
from utils.addressing import normalize_address

logger = logging.getLogger(__name__)

ERC20_ABI: list[dict[str, Any]] = [
    {
        "name": "decimals",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "spender", "type": "address"}, {"name": "value", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

ROUTER_ABI: list[dict[str, Any]] = [
    {
        "name": "WETH",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "name": "getAmountsOut",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "amountIn", "type": "uint256"}, {"name": "path", "type": "address[]"}],
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
    },
    {
        "name": "swapExactETHForTokensSupportingFeeOnTransferTokens",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {"name": "amountOutMin", "type": "uint256"},
            {"name": "path", "type": "address[]"},
            {"name": "to", "type": "address"},
            {"name": "deadline", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "name": "swapExactTokensForETHSupportingFeeOnTransferTokens",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "amountIn", "type": "uint256"},
            {"name": "amountOutMin", "type": "uint256"},
            {"name": "path", "type": "address[]"},
            {"name": "to", "type": "address"},
            {"name": "deadline", "type": "uint256"},
        ],
        "outputs": [],
    },
]


class LiveExecutor:
    """Blocking web3 client. Callers run it in a worker thread."""

    def __init__(self) -> None:
        if not config.LIVE_PRIVATE_KEY:
            raise ValueError("LIVE_PRIVATE_KEY is empty")
        if not config.LIVE_WALLET_ADDRESS:
            raise ValueError("LIVE_WALLET_ADDRESS is empty")
        if not config.LIVE_ROUTER_ADDRESS:
            raise ValueError("LIVE_ROUTER_ADDRESS is empty")
        if not config.RPC_PRIMARY:
            raise ValueError("RPC_PRIMARY is empty")

        self.w3 = Web3(HTTPProvider(config.RPC_PRIMARY, request_kwargs={"timeout": config.RPC_TIMEOUT_SECONDS}))
        if not self.w3.is_connected():
            raise ValueError("Web3 not connected")

        self.account = Account.from_key(config.LIVE_PRIVATE_KEY)
        self.wallet = self.w3.to_checksum_address(config.LIVE_WALLET_ADDRESS)
        if self.account.address.lower() != self.wallet.lower():
            raise ValueError("LIVE_WALLET_ADDRESS does not match LIVE_PRIVATE_KEY")

        self.router_address = self.w3.to_checksum_address(config.LIVE_ROUTER_ADDRESS)
        self.router: Contract = self.w3.eth.contract(address=self.router_address, abi=ROUTER_ABI)
        self.weth = self.w3.to_checksum_address(config.WETH_ADDRESS or self.router.functions.WETH().call())
        self._decimals: dict[str, int] = {normalize_address(self.weth): 18}

    def _is_quote(self, asset_id: str) -> bool:
        return normalize_address(asset_id) == normalize_address(self.weth)

    def token_decimals(self, token_address: str) -> int:
        key = normalize_address(token_address)
        cached = self._decimals.get(key)
        if cached is not None:
            return cached
        contract = self.w3.eth.contract(address=self.w3.to_checksum_address(key), abi=ERC20_ABI)
        decimals = int(contract.functions.decimals().call())
        if not 0 <= decimals <= 36:
            decimals = 18
        self._decimals[key] = decimals
        return decimals

    def token_balance(self, token_address: str) -> tuple[int, int]:
        """(raw balance, decimals). The quote coin reports the native balance."""
        if self._is_quote(token_address):
            return int(self.w3.eth.get_balance(self.wallet)), 18
        contract = self.w3.eth.contract(address=self.w3.to_checksum_address(token_address), abi=ERC20_ABI)
        return int(contract.functions.balanceOf(self.wallet).call()), self.token_decimals(token_address)

    def swap(self, input_asset: str, output_asset: str, amount_raw: int) -> SwapResult:
        if self._is_quote(input_asset) and not self._is_quote(output_asset):
            return self._buy(output_asset, amount_raw)
        if self._is_quote(output_asset) and not self._is_quote(input_asset):
            return self._sell(input_asset, amount_raw)
        return SwapResult(ok=False, amount_in=amount_raw, error="unsupported_route")

    def _buy(self, token_address: str, amount_in: int) -> SwapResult:
        if amount_in <= 0:
            return SwapResult(ok=False, error="amount_in_zero")
        token = self.w3.to_checksum_address(token_address)
        path = [self.weth, token]
        amount_out_min = self._estimate_amount_out_min(amount_in, path)
        token_contract = self.w3.eth.contract(address=token, abi=ERC20_ABI)
        balance_before = int(token_contract.functions.balanceOf(self.wallet).call())

        tx = self.router.functions.swapExactETHForTokensSupportingFeeOnTransferTokens(
            amount_out_min,
            path,
            self.wallet,
            self._deadline(),
        ).build_transaction(self._tx_params(value_wei=amount_in))
        tx_hash = self._send_and_wait(tx)

        bought_raw = max(0, int(token_contract.functions.balanceOf(self.wallet).call()) - balance_before)
        logger.info("LIVE_BUY token=%s spent_wei=%s received_raw=%s tx=%s", token, amount_in, bought_raw, tx_hash)
        return SwapResult(
            ok=True,
            signature=tx_hash,
            amount_in=amount_in,
            amount_out=bought_raw,
            price=self._unit_price(amount_in, 18, bought_raw, self.token_decimals(token_address)),
        )

    def _sell(self, token_address: str, amount_in: int) -> SwapResult:
        token = self.w3.to_checksum_address(token_address)
        token_contract = self.w3.eth.contract(address=token, abi=ERC20_ABI)
        available = int(token_contract.functions.balanceOf(self.wallet).call())
        if available <= 0 or amount_in <= 0:
            return SwapResult(ok=False, amount_in=amount_in, error=ZERO_BALANCE)
        amount_in = min(int(amount_in), available)
        self._ensure_allowance(token_contract, amount_in)

        path = [token, self.weth]
        amount_out_min = self._estimate_amount_out_min(amount_in, path)
        eth_before = int(self.w3.eth.get_balance(self.wallet))

        tx = self.router.functions.swapExactTokensForETHSupportingFeeOnTransferTokens(
            amount_in,
            amount_out_min,
            path,
            self.wallet,
            self._deadline(),
        ).build_transaction(self._tx_params())
        tx_hash = self._send_and_wait(tx)

        # Net of gas, so this slightly understates the fill.
        received_wei = max(0, int(self.w3.eth.get_balance(self.wallet)) - eth_before)
        logger.info("LIVE_SELL token=%s sold_raw=%s received_wei=%s tx=%s", token, amount_in, received_wei, tx_hash)
        return SwapResult(
            ok=True,
            signature=tx_hash,
            amount_in=amount_in,
            amount_out=received_wei,
            price=self._unit_price(received_wei, 18, amount_in, self.token_decimals(token_address)),
        )

    @staticmethod
    def _unit_price(quote_raw: int, quote_decimals: int, token_raw: int, token_decimals: int) -> float | None:
        if token_raw <= 0:
            return None
        return (quote_raw / 10**quote_decimals) / (token_raw / 10**token_decimals)

    def _ensure_allowance(self, token_contract: Contract, required_amount: int) -> None:
        allowance = int(token_contract.functions.allowance(self.wallet, self.router_address).call())
        if allowance >= required_amount:
            return
        approve_tx = token_contract.functions.approve(self.router_address, (2**256) - 1).build_transaction(
            self._tx_params()
        )
        self._send_and_wait(approve_tx)

    def _estimate_amount_out_min(self, amount_in: int, path: list[str]) -> int:
        amounts = self.router.functions.getAmountsOut(int(amount_in), path).call()
        quoted_out = int(amounts[-1])
        if quoted_out <= 0:
            raise RuntimeError("quote_zero")
        slip = max(1, int(config.LIVE_SLIPPAGE_BPS))
        return max(1, int(quoted_out * (10_000 - slip) / 10_000))

    def _deadline(self) -> int:
        return int(time.time()) + int(config.LIVE_SWAP_DEADLINE_SECONDS)

    def _tx_params(self, value_wei: int = 0) -> dict[str, Any]:
        pending_nonce = self.w3.eth.get_transaction_count(self.wallet, "pending")
        latest = self.w3.eth.get_block("latest")
        base_fee = int(latest.get("baseFeePerGas") or 0)
        priority = int(self.w3.to_wei(max(0.0, float(config.LIVE_PRIORITY_FEE_GWEI)), "gwei"))
        cap = int(self.w3.to_wei(max(0.0, float(config.LIVE_MAX_GAS_GWEI)), "gwei")) or int(self.w3.to_wei(1, "gwei"))

        observed_gas_price = int(self.w3.eth.gas_price or 0)
        if observed_gas_price > cap:
            raise RuntimeError(
                f"gas_price_too_high observed_gwei={float(self.w3.from_wei(observed_gas_price, 'gwei')):.3f} "
                f"cap_gwei={float(self.w3.from_wei(cap, 'gwei')):.3f}"
            )
        max_fee = min(cap, max(observed_gas_price, (base_fee * 2) + priority))
        return {
            "from": self.wallet,
            "chainId": int(config.LIVE_CHAIN_ID),
            "nonce": pending_nonce,
            "value": int(value_wei),
            "maxFeePerGas": max_fee,
            "maxPriorityFeePerGas": min(priority, max_fee),
            "type": 2,
        }

    def _send_and_wait(self, tx: dict[str, Any]) -> str:
        gas_limit = int(self.w3.eth.estimate_gas(tx) * 1.15)
        if gas_limit > int(config.LIVE_MAX_SWAP_GAS):
            raise RuntimeError(f"gas_estimate_too_high gas={gas_limit} cap={config.LIVE_MAX_SWAP_GAS}")
        tx["gas"] = gas_limit

        # Base adds an L1 data fee on top; keep a 20% buffer.
        balance = int(self.w3.eth.get_balance(self.wallet))
        worst_cost = int(((gas_limit * int(tx.get("maxFeePerGas") or 0)) + int(tx.get("value") or 0)) * 1.20)
        if worst_cost > balance:
            raise RuntimeError(
                f"insufficient_balance_for_tx have_wei={balance} want_wei={worst_cost} gas={gas_limit}"
            )
        signed = self.account.sign_transaction(tx)
        raw_tx = getattr(signed, "raw_transaction", None) or getattr(signed, "rawTransaction", None)
        if raw_tx is None:
            raise RuntimeError("signed_tx_missing_raw_bytes")
        tx_hash = self.w3.eth.send_raw_transaction(raw_tx)
        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=int(config.LIVE_TX_TIMEOUT_SECONDS))
        if int(receipt.status) != 1:
            raise RuntimeError(f"tx_failed hash={tx_hash.hex()}")
        return tx_hash.hex()
