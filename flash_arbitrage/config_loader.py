"""
Configuration loading and normalization for the flash arbitrage bot.

Loads a YAML file, fills in defaults and returns frozen dataclasses. Secrets
(wallet key, subgraph API key) are only ever read from the environment, which
may be populated from a .env file.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml
from dotenv import load_dotenv

from .exceptions import ConfigurationError
from .types import VenueKind


@dataclass(frozen=True)
class NetworkConfig:
    """Chain and RPC endpoint configuration."""

    rpc_http_url: str
    rpc_ws_url: str
    chain_id: int = 137
    request_timeout: float = 30.0
    max_retries: int = 3


@dataclass(frozen=True)
class WalletConfig:
    """Where to find the signing key."""

    private_key_env: str = "WALLET_PRIVATE_KEY"

    @property
    def private_key(self) -> Optional[str]:
        return os.getenv(self.private_key_env)


@dataclass(frozen=True)
class DiscoveryConfig:
    """Pool subgraph location and pagination settings."""

    subgraph_base_url: str = "https://gateway.thegraph.com/api"
    api_key_env: str = "THE_GRAPH_API_KEY"
    limit: int = 100
    page_count: int = 10
    page_size: int = 10
    request_timeout: float = 30.0

    @property
    def api_key(self) -> str:
        return os.getenv(self.api_key_env, "")


@dataclass(frozen=True)
class DetectionConfig:
    """
    Opportunity detection parameters.

    Gas costs are in human units of the cycle's starting token.
    """

    price_impact_threshold_bps: Decimal = Decimal(10)
    input_scaling_factor: Decimal = Decimal(10)
    default_gas_cost: Decimal = Decimal(0)
    gas_cost_by_symbol: Dict[str, Decimal] = field(default_factory=dict)

    def gas_cost_for(self, symbol: str) -> Decimal:
        return self.gas_cost_by_symbol.get(symbol, self.default_gas_cost)


@dataclass(frozen=True)
class ExecutionConfig:
    """Flash-loan contract and transaction settings."""

    contract_address: str = ""
    gas_limit: int = 1_000_000
    max_gas_price_gwei: Decimal = Decimal(500)
    dry_run: bool = True
    await_confirmation: bool = False
    confirmation_timeout: float = 120.0


@dataclass(frozen=True)
class StreamingConfig:
    """Reconnect policy for the event stream."""

    reconnect_initial_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    reconnect_multiplier: float = 2.0
    max_reconnect_attempts: int = 10
    request_timeout: float = 10.0


@dataclass(frozen=True)
class MetricsConfig:
    """Prometheus endpoint configuration."""

    enabled: bool = False
    port: int = 8000


@dataclass(frozen=True)
class VenueConfig:
    """One exchange venue to watch."""

    name: str
    kind: VenueKind
    subgraph_name: str
    contract_address: Optional[str] = None


@dataclass(frozen=True)
class BotConfig:
    """Immutable runtime configuration object."""

    network: NetworkConfig
    venues: Tuple[VenueConfig, ...]
    wallet: WalletConfig = field(default_factory=WalletConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    streaming: StreamingConfig = field(default_factory=StreamingConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)


def load_yaml_config(config_path: Union[str, Path]) -> Dict[str, Any]:
    """Load and parse YAML configuration file."""
    config_path = Path(config_path)

    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, "r") as f:
            config_dict = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}")
    except OSError as e:
        raise ConfigurationError(f"Failed to load config {config_path}: {e}")

    if config_dict is None:
        raise ConfigurationError(f"Empty configuration file: {config_path}")
    if not isinstance(config_dict, dict):
        raise ConfigurationError(f"Configuration root must be a mapping: {config_path}")

    return config_dict


def _to_decimal(value: Any, key: str) -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ConfigurationError(f"Config field '{key}' must be numeric, got {value!r}")


def _to_bool(value: Any, key: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigurationError(f"Config field '{key}' must be true or false, got {value!r}")
    return value


def _env_or_value(section: Dict[str, Any], key: str, env_name: str) -> str:
    """Environment variable wins over the YAML value."""
    return os.getenv(env_name) or section.get(key) or ""


def _normalize_network_config(config_dict: Dict[str, Any]) -> NetworkConfig:
    """Normalize network configuration with defaults."""
    network = config_dict.get("network", {})

    rpc_http_url = _env_or_value(network, "rpc_http_url", "RPC_HTTP_URL")
    rpc_ws_url = _env_or_value(network, "rpc_ws_url", "RPC_WS_URL")
    if not rpc_http_url:
        raise ConfigurationError("network.rpc_http_url (or RPC_HTTP_URL) is required")
    if not rpc_ws_url:
        raise ConfigurationError("network.rpc_ws_url (or RPC_WS_URL) is required")

    return NetworkConfig(
        rpc_http_url=rpc_http_url,
        rpc_ws_url=rpc_ws_url,
        chain_id=int(network.get("chain_id", 137)),
        request_timeout=float(network.get("request_timeout", 30.0)),
        max_retries=int(network.get("max_retries", 3)),
    )


def _normalize_discovery_config(config_dict: Dict[str, Any]) -> DiscoveryConfig:
    """Normalize discovery configuration with defaults."""
    discovery = config_dict.get("discovery", {})

    config = DiscoveryConfig(
        subgraph_base_url=discovery.get(
            "subgraph_base_url", "https://gateway.thegraph.com/api"
        ),
        api_key_env=discovery.get("api_key_env", "THE_GRAPH_API_KEY"),
        limit=int(discovery.get("limit", 100)),
        page_count=int(discovery.get("page_count", 10)),
        page_size=int(discovery.get("page_size", 10)),
        request_timeout=float(discovery.get("request_timeout", 30.0)),
    )
    if config.limit <= 0 or config.page_count <= 0 or config.page_size <= 0:
        raise ConfigurationError("discovery limit, page_count and page_size must be positive")
    return config


def _normalize_detection_config(config_dict: Dict[str, Any]) -> DetectionConfig:
    """Normalize detection configuration with defaults."""
    detection = config_dict.get("detection", {})

    gas_costs = {
        str(symbol): _to_decimal(cost, f"detection.gas_cost_by_symbol.{symbol}")
        for symbol, cost in (detection.get("gas_cost_by_symbol") or {}).items()
    }
    config = DetectionConfig(
        price_impact_threshold_bps=_to_decimal(
            detection.get("price_impact_threshold_bps", 10),
            "detection.price_impact_threshold_bps",
        ),
        input_scaling_factor=_to_decimal(
            detection.get("input_scaling_factor", 10), "detection.input_scaling_factor"
        ),
        default_gas_cost=_to_decimal(
            detection.get("default_gas_cost", 0), "detection.default_gas_cost"
        ),
        gas_cost_by_symbol=gas_costs,
    )
    if config.input_scaling_factor <= 0:
        raise ConfigurationError("detection.input_scaling_factor must be positive")
    return config


def _normalize_execution_config(config_dict: Dict[str, Any]) -> ExecutionConfig:
    """Normalize execution configuration with defaults."""
    execution = config_dict.get("execution", {})

    return ExecutionConfig(
        contract_address=_env_or_value(
            execution, "contract_address", "FLASH_ARBITRAGE_CONTRACT"
        ),
        gas_limit=int(execution.get("gas_limit", 1_000_000)),
        max_gas_price_gwei=_to_decimal(
            execution.get("max_gas_price_gwei", 500), "execution.max_gas_price_gwei"
        ),
        dry_run=_to_bool(execution.get("dry_run", True), "execution.dry_run"),
        await_confirmation=_to_bool(
            execution.get("await_confirmation", False), "execution.await_confirmation"
        ),
        confirmation_timeout=float(execution.get("confirmation_timeout", 120.0)),
    )


def _normalize_streaming_config(config_dict: Dict[str, Any]) -> StreamingConfig:
    """Normalize streaming configuration with defaults."""
    streaming = config_dict.get("streaming", {})

    return StreamingConfig(
        reconnect_initial_delay=float(streaming.get("reconnect_initial_delay", 1.0)),
        reconnect_max_delay=float(streaming.get("reconnect_max_delay", 30.0)),
        reconnect_multiplier=float(streaming.get("reconnect_multiplier", 2.0)),
        max_reconnect_attempts=int(streaming.get("max_reconnect_attempts", 10)),
        request_timeout=float(streaming.get("request_timeout", 10.0)),
    )


def _normalize_metrics_config(config_dict: Dict[str, Any]) -> MetricsConfig:
    """Normalize metrics configuration with defaults."""
    metrics = config_dict.get("metrics", {})

    return MetricsConfig(
        enabled=_to_bool(metrics.get("enabled", False), "metrics.enabled"),
        port=int(metrics.get("port", 8000)),
    )


def _normalize_venues(config_dict: Dict[str, Any]) -> Tuple[VenueConfig, ...]:
    """Parse and validate the venue list."""
    venues_raw = config_dict.get("venues") or []
    if not venues_raw:
        raise ConfigurationError("At least one venue must be configured")

    venues = []
    seen = set()
    for i, venue in enumerate(venues_raw):
        if not isinstance(venue, dict):
            raise ConfigurationError(f"Venue config {i} must be a dict")

        name = venue.get("name")
        if not name:
            raise ConfigurationError(f"Venue config {i} missing 'name'")
        if name in seen:
            raise ConfigurationError(f"Duplicate venue name '{name}'")
        seen.add(name)

        try:
            kind = VenueKind(venue.get("kind", VenueKind.UNISWAP_V3.value))
        except ValueError:
            raise ConfigurationError(
                f"Venue '{name}' has unsupported kind '{venue.get('kind')}'"
            )

        subgraph_name = venue.get("subgraph_name")
        if not subgraph_name:
            raise ConfigurationError(f"Venue '{name}' missing 'subgraph_name'")

        venues.append(
            VenueConfig(
                name=name,
                kind=kind,
                subgraph_name=subgraph_name,
                contract_address=venue.get("contract_address"),
            )
        )
    return tuple(venues)


def load_bot_config(
    config_path: Union[str, Path], env_file: Optional[Union[str, Path]] = None
) -> BotConfig:
    """
    Load and normalize a bot configuration file.

    Args:
        config_path: Path to the YAML configuration file
        env_file: Optional .env file; the default lookup is used when omitted

    Returns:
        Normalized and frozen bot configuration

    Raises:
        ConfigurationError: If the configuration cannot be loaded or is invalid
    """
    if env_file is not None:
        load_dotenv(env_file)
    else:
        load_dotenv()

    config_dict = load_yaml_config(config_path)

    try:
        return BotConfig(
            network=_normalize_network_config(config_dict),
            venues=_normalize_venues(config_dict),
            wallet=WalletConfig(
                private_key_env=config_dict.get("wallet", {}).get(
                    "private_key_env", "WALLET_PRIVATE_KEY"
                )
            ),
            discovery=_normalize_discovery_config(config_dict),
            detection=_normalize_detection_config(config_dict),
            execution=_normalize_execution_config(config_dict),
            streaming=_normalize_streaming_config(config_dict),
            metrics=_normalize_metrics_config(config_dict),
        )
    except ConfigurationError:
        raise
    except (TypeError, ValueError, AttributeError) as e:
        raise ConfigurationError(f"Failed to normalize configuration: {e}")
