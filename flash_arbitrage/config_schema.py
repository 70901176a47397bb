"""
Configuration schema validation using Pydantic
"""

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from flash_arbitrage.fixed_point import BPS_DENOMINATOR, U64_MAX

VenueKindName = Literal["constant_product", "routed"]


class AssetConfig(BaseModel):
    """A token known to the engine."""

    symbol: str
    address: str = Field(description="Mint / contract address of the token")
    decimals: int = Field(ge=0, le=36)

    model_config = {"extra": "forbid", "frozen": True}


class PairConfig(BaseModel):
    """One watch-list entry. Amounts are raw integers (smallest denomination)."""

    input_asset: str
    output_asset: str
    trade_amount: int = Field(gt=0, le=U64_MAX)
    loan_amount: int = Field(gt=0, le=U64_MAX)

    model_config = {"extra": "forbid", "frozen": True}

    @model_validator(mode="after")
    def validate_distinct_assets(self):
        if self.input_asset == self.output_asset:
            raise ValueError(
                f"Pair must use two different assets, got {self.input_asset} twice"
            )
        return self


class PoolConfig(BaseModel):
    """Constant-product pool; reserves seed paper mode, address is read live."""

    asset_0: str
    asset_1: str
    address: Optional[str] = None
    reserve_0: Optional[int] = Field(default=None, ge=0, le=U64_MAX)
    reserve_1: Optional[int] = Field(default=None, ge=0, le=U64_MAX)

    model_config = {"extra": "forbid"}


class VenueConfig(BaseModel):
    """A liquidity venue: a constant-product pool set or a routed aggregator."""

    name: str
    kind: VenueKindName
    fee_bps: int = Field(ge=0, lt=BPS_DENOMINATOR)
    max_slippage_bps: Optional[int] = Field(default=None, ge=0, le=1000)

    # constant_product
    pools: List[PoolConfig] = Field(default_factory=list)

    # routed
    base_url: Optional[str] = None
    only_direct_routes: bool = True
    rates: Dict[str, float] = Field(
        default_factory=dict,
        description="Paper-mode raw-unit rates keyed 'IN/OUT' (output per input)",
    )

    model_config = {"extra": "forbid"}

    @model_validator(mode="after")
    def validate_kind_settings(self):
        if self.kind == "constant_product" and not self.pools:
            raise ValueError(f"Venue '{self.name}': constant_product needs pools")
        if self.kind == "routed" and not (self.base_url or self.rates):
            raise ValueError(f"Venue '{self.name}': routed needs base_url or rates")
        return self


class VenuesConfig(BaseModel):
    venue_a: VenueConfig
    venue_b: VenueConfig
    conversion: Optional[VenueConfig] = None

    model_config = {"extra": "forbid"}


class FeeConfig(BaseModel):
    """Loan / conversion fee rates and the fixed gas estimate."""

    loan_fee_bps: int = Field(default=20, ge=0, lt=BPS_DENOMINATOR)
    conversion_fee_bps: int = Field(default=60, ge=0, lt=BPS_DENOMINATOR)
    gas_estimate: int = Field(
        default=10_000_000,
        ge=0,
        le=U64_MAX,
        description="Execution cost in raw settlement-asset units",
    )

    model_config = {"extra": "forbid"}


class PriceFeedConfig(BaseModel):
    """Where the settlement-asset price for gas conversion comes from."""

    source: Literal["coingecko", "static"] = "coingecko"
    base_url: str = "https://api.coingecko.com/api/v3"
    ids: Dict[str, str] = Field(
        default_factory=dict, description="Asset symbol -> CoinGecko id"
    )
    static_prices: Dict[str, float] = Field(default_factory=dict)
    vs_currency: str = "usd"

    model_config = {"extra": "forbid"}


class PaperConfig(BaseModel):
    """In-memory collaborators used when mode == 'paper'."""

    loan_liquidity: int = Field(default=U64_MAX, ge=0, le=U64_MAX)
    wallet: str = "paper-wallet"

    model_config = {"extra": "forbid"}


class ArbitrageConfig(BaseModel):
    """Top-level configuration, loaded once at startup."""

    mode: Literal["paper", "live"] = "paper"
    rpc_url: Optional[str] = None
    program_address: Optional[str] = None
    private_key_env: str = "ARB_PRIVATE_KEY"
    chain_id: Optional[int] = None

    settlement_asset: str
    profit_destination: str

    poll_interval_sec: float = Field(default=1.0, gt=0, le=3600)
    request_timeout_sec: float = Field(default=10.0, gt=0, le=300)
    price_cache_ttl_sec: float = Field(default=5.0, ge=0, le=3600)
    min_profit_threshold_pct: float = Field(default=0.5, ge=0, le=100)
    slippage_tolerance_pct: float = Field(default=0.3, ge=0, le=10)
    quote_source: Literal["direct", "simulation"] = "direct"

    assets: Dict[str, AssetConfig]
    pairs: List[PairConfig] = Field(min_length=1)
    venues: VenuesConfig
    fees: FeeConfig = Field(default_factory=FeeConfig)
    price_feed: PriceFeedConfig = Field(default_factory=PriceFeedConfig)
    paper: PaperConfig = Field(default_factory=PaperConfig)
    metrics_port: Optional[int] = Field(default=None, ge=1, le=65535)

    model_config = {"extra": "forbid", "frozen": True}

    @field_validator("assets")
    @classmethod
    def validate_asset_keys(cls, v):
        for key, asset in v.items():
            if key != asset.symbol:
                raise ValueError(
                    f"Asset key '{key}' does not match its symbol '{asset.symbol}'"
                )
        return v

    @model_validator(mode="after")
    def validate_references(self):
        known = set(self.assets)
        if self.settlement_asset not in known:
            raise ValueError(f"settlement_asset '{self.settlement_asset}' not in assets")
        for pair in self.pairs:
            for symbol in (pair.input_asset, pair.output_asset):
                if symbol not in known:
                    raise ValueError(f"Pair asset '{symbol}' not in assets")
        needs_conversion = any(
            pair.input_asset != self.settlement_asset for pair in self.pairs
        )
        if needs_conversion and self.venues.conversion is None:
            raise ValueError(
                "A conversion venue is required when a pair's input asset "
                "differs from the settlement asset"
            )
        if self.mode == "live" and not (self.rpc_url and self.program_address):
            raise ValueError("rpc_url and program_address are required for live mode")
        return self
