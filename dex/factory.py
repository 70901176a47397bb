"""
Builds the runtime object graph from a validated ``ArbitrageConfig``.

Paper mode wires the in-process orchestrator to in-memory collaborators;
live mode connects web3 and triggers executions through the deployed
program.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from web3 import Web3

from flash_arbitrage.config_loader import resolve_private_key
from flash_arbitrage.config_schema import ArbitrageConfig, VenueConfig
from flash_arbitrage.exceptions import ConfigurationError, NetworkError
from flash_arbitrage.fixed_point import pct_to_bps
from flash_arbitrage.metrics import ArbitrageMetrics
from flash_arbitrage.utils import get_logger

from .adapters.routed import HttpRouteProvider
from .chain_client import ChainExecutionClient
from .fees import FeeModel
from .monitor import DirectQuoteSource, OpportunityMonitor, SimulatedQuoteSource
from .orchestrator import ArbitrageOrchestrator
from .paper import PaperLedger, PaperLoanVenue, PaperRouteProvider
from .price_feed import CoinGeckoPriceFeed, GasCostConverter, StaticPriceFeed
from .simulation import PriceCheckProgram
from .types import Asset, TokenPair
from .venues import ConstantProductVenue, Pool, RoutedVenue, Venue

logger = get_logger(__name__)


@dataclass
class Engine:
    """Everything the CLI needs to run and shut down cleanly."""

    config: ArbitrageConfig
    monitor: OpportunityMonitor
    venues: Dict[str, Venue]
    ledger: Optional[PaperLedger] = None
    loan_venue: Optional[PaperLoanVenue] = None
    closeables: List[object] = field(default_factory=list)

    async def close(self) -> None:
        for resource in self.closeables:
            await resource.close()


def build_assets(config: ArbitrageConfig) -> Dict[str, Asset]:
    return {
        symbol: Asset(symbol=a.symbol, address=a.address, decimals=a.decimals)
        for symbol, a in config.assets.items()
    }


def build_pairs(config: ArbitrageConfig, assets: Dict[str, Asset]) -> List[TokenPair]:
    return [
        TokenPair(
            input_asset=assets[p.input_asset],
            output_asset=assets[p.output_asset],
            trade_amount=p.trade_amount,
            loan_amount=p.loan_amount,
        )
        for p in config.pairs
    ]


def build_fee_model(config: ArbitrageConfig) -> FeeModel:
    return FeeModel(
        loan_fee_bps=config.fees.loan_fee_bps,
        venue_a_fee_bps=config.venues.venue_a.fee_bps,
        venue_b_fee_bps=config.venues.venue_b.fee_bps,
        conversion_fee_bps=config.fees.conversion_fee_bps,
        gas_estimate=config.fees.gas_estimate,
        min_profit_bps=pct_to_bps(config.min_profit_threshold_pct),
        slippage_bps=pct_to_bps(config.slippage_tolerance_pct),
    )


def _routed_rates(venue: VenueConfig, assets: Dict[str, Asset]) -> Dict[str, float]:
    rates = {}
    for key, rate in venue.rates.items():
        try:
            input_symbol, output_symbol = key.split("/")
            rates[f"{assets[input_symbol].address}/{assets[output_symbol].address}"] = rate
        except (KeyError, ValueError) as e:
            raise ConfigurationError(
                f"Venue '{venue.name}': bad rate key '{key}' (expected 'IN/OUT')"
            ) from e
    return rates


def build_venue(
    venue: VenueConfig,
    assets: Dict[str, Asset],
    config: ArbitrageConfig,
    web3: Optional[Web3] = None,
) -> Venue:
    """Instantiate one configured venue."""
    slippage = venue.max_slippage_bps
    if slippage is None:
        slippage = pct_to_bps(config.slippage_tolerance_pct)

    if venue.kind == "constant_product":
        pools = []
        for p in venue.pools:
            if p.asset_0 not in assets or p.asset_1 not in assets:
                raise ConfigurationError(f"Venue '{venue.name}': pool asset not in assets")
            pools.append(
                Pool(
                    asset_0=assets[p.asset_0],
                    asset_1=assets[p.asset_1],
                    reserve_0=p.reserve_0 or 0,
                    reserve_1=p.reserve_1 or 0,
                    address=p.address if config.mode == "live" else None,
                )
            )
        return ConstantProductVenue(
            venue_id=venue.name,
            fee_bps=venue.fee_bps,
            pools=pools,
            max_slippage_bps=slippage,
            web3=web3,
            timeout=config.request_timeout_sec,
        )

    if config.mode == "live" and venue.base_url:
        provider = HttpRouteProvider(
            base_url=venue.base_url,
            timeout=config.request_timeout_sec,
            only_direct_routes=venue.only_direct_routes,
        )
    else:
        provider = PaperRouteProvider(_routed_rates(venue, assets), fee_bps=venue.fee_bps)
    return RoutedVenue(
        venue_id=venue.name,
        fee_bps=venue.fee_bps,
        provider=provider,
        max_slippage_bps=slippage,
    )


def connect_web3(config: ArbitrageConfig) -> Web3:
    web3 = Web3(
        Web3.HTTPProvider(
            config.rpc_url, request_kwargs={"timeout": config.request_timeout_sec}
        )
    )
    try:
        block = web3.eth.block_number
    except Exception as e:
        raise NetworkError(f"Cannot reach RPC {config.rpc_url}: {e}", endpoint=config.rpc_url) from e
    logger.info(f"Connected to {config.rpc_url} at block {block}")
    return web3


def build_engine(
    config: ArbitrageConfig,
    metrics: Optional[ArbitrageMetrics] = None,
    web3: Optional[Web3] = None,
) -> Engine:
    """
    Wire venues, fee model, execution entry point and monitor.

    Args:
        config: Validated configuration
        metrics: Optional Prometheus metrics for the monitor
        web3: Pre-built Web3 instance (connected from ``rpc_url`` in live mode)
    """
    assets = build_assets(config)
    pairs = build_pairs(config, assets)
    fee_model = build_fee_model(config)
    settlement = assets[config.settlement_asset]

    live = config.mode == "live"
    if live and web3 is None:
        web3 = connect_web3(config)

    venue_web3 = web3 if live else None
    venue_a = build_venue(config.venues.venue_a, assets, config, venue_web3)
    venue_b = build_venue(config.venues.venue_b, assets, config, venue_web3)
    venues: Dict[str, Venue] = {"a": venue_a, "b": venue_b}
    conversion = None
    if config.venues.conversion is not None:
        conversion = build_venue(config.venues.conversion, assets, config, venue_web3)
        venues["conversion"] = conversion

    closeables: List[object] = [
        v.provider for v in venues.values()
        if isinstance(v, RoutedVenue) and isinstance(v.provider, HttpRouteProvider)
    ]

    ledger = None
    loan_venue = None
    chain_client = None
    if live:
        chain_client = ChainExecutionClient(
            web3,
            config.program_address,
            fee_model,
            private_key=resolve_private_key(config),
            chain_id=config.chain_id,
            timeout=config.request_timeout_sec,
        )
        executor = chain_client
    else:
        ledger = PaperLedger(execution_account=config.paper.wallet)
        loan_venue = PaperLoanVenue(
            fee_bps=config.fees.loan_fee_bps,
            default_liquidity=config.paper.loan_liquidity,
        )
        executor = ArbitrageOrchestrator(
            venue_a=venue_a,
            venue_b=venue_b,
            loan_venue=loan_venue,
            transferer=ledger,
            fee_model=fee_model,
            settlement_asset=settlement,
            wallet=config.paper.wallet,
            profit_destination=config.profit_destination,
            conversion_venue=conversion,
            step_timeout=config.request_timeout_sec,
        )

    if config.quote_source == "simulation":
        simulator = chain_client if live else PriceCheckProgram(venue_a, venue_b)
        quote_source = SimulatedQuoteSource(
            simulator,
            venue_a.venue_id,
            venue_b.venue_id,
            venue_a.fee_bps,
            venue_b.fee_bps,
        )
    else:
        quote_source = DirectQuoteSource(venue_a, venue_b)

    feed_config = config.price_feed
    if feed_config.source == "static":
        feed = StaticPriceFeed(feed_config.static_prices)
    else:
        feed = CoinGeckoPriceFeed(
            ids=feed_config.ids,
            base_url=feed_config.base_url,
            vs_currency=feed_config.vs_currency,
            cache_ttl=config.price_cache_ttl_sec,
            timeout=config.request_timeout_sec,
        )
        closeables.append(feed)

    monitor = OpportunityMonitor(
        pairs=pairs,
        quote_source=quote_source,
        executor=executor,
        fee_model=fee_model,
        settlement_asset=settlement,
        gas_converter=GasCostConverter(feed, settlement),
        poll_interval=config.poll_interval_sec,
        request_timeout=config.request_timeout_sec,
        metrics=metrics,
    )

    logger.info(
        f"Engine ready: mode={config.mode}, quotes={config.quote_source}, "
        f"venues={venue_a.venue_id}/{venue_b.venue_id}, pairs={len(pairs)}"
    )
    return Engine(
        config=config,
        monitor=monitor,
        venues=venues,
        ledger=ledger,
        loan_venue=loan_venue,
        closeables=closeables,
    )
