"""
Configuration management for external stores and memory engine settings.
"""

import dataclasses
import math
import os
import threading
from dataclasses import dataclass, field

from dotenv import load_dotenv

from ..models.core import FusionWeights

load_dotenv()

TIER_FAILURE_POLICIES = ('degrade', 'fail_closed')


class ConfigurationError(ValueError):
    """Raised when memory engine settings are missing or invalid."""
    pass


@dataclass(frozen=True)
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float


@dataclass(frozen=True)
class NeptuneConfig:
    """Configuration for Amazon Neptune graph database."""
    endpoint: str
    port: int
    region: str
    use_iam_auth: bool


@dataclass(frozen=True)
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_name: str
    dimension: int


@dataclass(frozen=True)
class MemoryConfig:
    """Configuration for memory housekeeping."""
    session_max_age_hours: float
    cleanup_interval_hours: float


@dataclass(frozen=True)
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass(frozen=True)
class MemoryControllerConfig:
    """Tier capacities, thresholds, fusion weights and decay coefficients.

    Instances are immutable; use ConfigStore.update to publish a new version.
    """
    l1_max_turns: int = 20
    l1_max_tokens: int = 4000
    l2_significance_threshold: float = 5.0
    l2_emotional_delta_threshold: float = 0.3
    l3_vector_dimension: int = 1536
    l3_max_fragments: int = 1000
    default_fusion_weights: FusionWeights = field(default_factory=lambda: FusionWeights(w_L1=0.4, w_L2=0.4, w_L3=0.2))
    importance_decay_rate: float = 0.1
    access_boost_factor: float = 1.2
    recency_boost_factor: float = 1.5
    store_timeout_seconds: float = 5.0
    tier_failure_policy: str = 'degrade'
    token_price: float = 0.0001
    version: int = 1

    @property
    def l3_promotion_threshold(self) -> float:
        """Significance needed before a turn is archived in L3."""
        return self.l2_significance_threshold * 1.5


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    embedding_backend: str  # bedrock | hash
    vector_backend: str  # opensearch | memory
    bedrock_embed: BedrockEmbedConfig
    neptune: NeptuneConfig
    opensearch: OpenSearchConfig
    memory: MemoryConfig
    mcp: MCPConfig
    controller: MemoryControllerConfig


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def validate_fusion_weights(weights: FusionWeights) -> FusionWeights:
    """Check a weight triple, raising ConfigurationError when it is unusable.

    Args:
        weights: Candidate fusion weights

    Returns:
        The same weights, for chaining
    """
    if not isinstance(weights, FusionWeights):
        raise ConfigurationError('Fusion weights are required')
    values = (weights.w_L1, weights.w_L2, weights.w_L3)
    for name, value in zip(('w_L1', 'w_L2', 'w_L3'), values):
        if not _is_number(value):
            raise ConfigurationError(f'Fusion weight {name} must be a finite number, got {value!r}')
        if value < 0 or value > 1:
            raise ConfigurationError(f'Fusion weight {name} must be within [0, 1], got {value}')
    if sum(values) <= 0:
        raise ConfigurationError('At least one fusion weight must be positive')
    return weights


def validate_config(cfg: MemoryControllerConfig) -> MemoryControllerConfig:
    """Validate engine settings before any I/O takes place.

    Raises:
        ConfigurationError: If any field is missing or out of range
    """
    for name in ('l1_max_turns', 'l1_max_tokens', 'l3_vector_dimension', 'l3_max_fragments'):
        value = getattr(cfg, name)
        if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            raise ConfigurationError(f'{name} must be a positive integer, got {value!r}')

    if not _is_number(cfg.l2_significance_threshold) or not 0 <= cfg.l2_significance_threshold <= 10:
        raise ConfigurationError(f'l2_significance_threshold must be within [0, 10], got {cfg.l2_significance_threshold!r}')
    if not _is_number(cfg.l2_emotional_delta_threshold) or cfg.l2_emotional_delta_threshold < 0:
        raise ConfigurationError(
            f'l2_emotional_delta_threshold must be non-negative, got {cfg.l2_emotional_delta_threshold!r}')

    validate_fusion_weights(cfg.default_fusion_weights)

    if not _is_number(cfg.importance_decay_rate) or cfg.importance_decay_rate <= 0:
        raise ConfigurationError(f'importance_decay_rate must be positive, got {cfg.importance_decay_rate!r}')
    for name in ('access_boost_factor', 'recency_boost_factor'):
        value = getattr(cfg, name)
        if not _is_number(value) or value < 1:
            raise ConfigurationError(f'{name} must be at least 1, got {value!r}')
    if not _is_number(cfg.store_timeout_seconds) or cfg.store_timeout_seconds <= 0:
        raise ConfigurationError(f'store_timeout_seconds must be positive, got {cfg.store_timeout_seconds!r}')
    if cfg.tier_failure_policy not in TIER_FAILURE_POLICIES:
        raise ConfigurationError(f'tier_failure_policy must be one of {TIER_FAILURE_POLICIES}')
    if not _is_number(cfg.token_price) or cfg.token_price < 0:
        raise ConfigurationError(f'token_price must be non-negative, got {cfg.token_price!r}')
    return cfg


class ConfigStore:
    """Holds the current MemoryControllerConfig and swaps it copy-on-write.

    Readers call current() once per request and keep that snapshot, so an
    admin update mid-request is never observed half-applied.
    """

    def __init__(self, initial: MemoryControllerConfig):
        self._lock = threading.Lock()
        self._current = validate_config(initial)

    def current(self) -> MemoryControllerConfig:
        return self._current

    def update(self, **changes) -> MemoryControllerConfig:
        """Publish a new configuration version.

        Args:
            **changes: Field names and new values

        Returns:
            The newly published snapshot

        Raises:
            ConfigurationError: If a field is unknown or the result is invalid
        """
        unknown = set(changes) - {f.name for f in dataclasses.fields(MemoryControllerConfig)}
        read_only = {'version'} & set(changes)
        if unknown or read_only:
            raise ConfigurationError(f'Unknown or read-only configuration fields: {sorted(unknown | read_only)}')
        with self._lock:
            candidate = dataclasses.replace(self._current, version=self._current.version + 1, **changes)
            self._current = validate_config(candidate)
            return self._current


def load_controller_config() -> MemoryControllerConfig:
    """Load engine settings from TIERMEM_* environment variables with defaults."""
    weights = FusionWeights(w_L1=float(os.getenv('TIERMEM_WEIGHT_L1', '0.4')),
                            w_L2=float(os.getenv('TIERMEM_WEIGHT_L2', '0.4')),
                            w_L3=float(os.getenv('TIERMEM_WEIGHT_L3', '0.2')))

    return MemoryControllerConfig(l1_max_turns=int(os.getenv('TIERMEM_L1_MAX_TURNS', '20')),
                                  l1_max_tokens=int(os.getenv('TIERMEM_L1_MAX_TOKENS', '4000')),
                                  l2_significance_threshold=float(os.getenv('TIERMEM_L2_SIGNIFICANCE_THRESHOLD', '5.0')),
                                  l2_emotional_delta_threshold=float(os.getenv('TIERMEM_L2_EMOTIONAL_DELTA_THRESHOLD', '0.3')),
                                  l3_vector_dimension=int(os.getenv('TIERMEM_L3_VECTOR_DIMENSION', '1536')),
                                  l3_max_fragments=int(os.getenv('TIERMEM_L3_MAX_FRAGMENTS', '1000')),
                                  default_fusion_weights=weights,
                                  importance_decay_rate=float(os.getenv('TIERMEM_IMPORTANCE_DECAY_RATE', '0.1')),
                                  access_boost_factor=float(os.getenv('TIERMEM_ACCESS_BOOST_FACTOR', '1.2')),
                                  recency_boost_factor=float(os.getenv('TIERMEM_RECENCY_BOOST_FACTOR', '1.5')),
                                  store_timeout_seconds=float(os.getenv('TIERMEM_STORE_TIMEOUT_SECONDS', '5.0')),
                                  tier_failure_policy=os.getenv('TIERMEM_TIER_FAILURE_POLICY', 'degrade'),
                                  token_price=float(os.getenv('TIERMEM_TOKEN_PRICE', '0.0001')))


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    # Neptune configuration
    neptune_config = NeptuneConfig(endpoint=os.getenv('NEPTUNE_ENDPOINT', 'localhost'),
                                   port=int(os.getenv('NEPTUNE_PORT', '8182')),
                                   region=os.getenv('NEPTUNE_AWS_REGION', 'us-east-1'),
                                   use_iam_auth=os.getenv('NEPTUNE_IAM_AUTH', 'true').lower() == 'true')

    # Vector search configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'tiermem_fragments'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')))

    # Memory housekeeping configuration
    memory_config = MemoryConfig(session_max_age_hours=float(os.getenv('MEMORY_SESSION_MAX_AGE_HOURS', '24')),
                                 cleanup_interval_hours=float(os.getenv('MEMORY_CLEANUP_INTERVAL_HOURS', '1')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     embedding_backend=os.getenv('TIERMEM_EMBEDDING_BACKEND', 'bedrock'),
                     vector_backend=os.getenv('TIERMEM_VECTOR_BACKEND', 'opensearch'),
                     bedrock_embed=bedrock_embed_config,
                     neptune=neptune_config,
                     opensearch=opensearch_config,
                     memory=memory_config,
                     mcp=mcp_config,
                     controller=load_controller_config())


# Process-wide infrastructure settings (read-only)
config = load_config()
