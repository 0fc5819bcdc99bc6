"""
Health check utilities for the memory engine's external stores.
"""

from typing import Any, Callable, Dict, Optional

from .bedrock_embed import BedrockEmbed
from .config import AppConfig, config
from .logging_config import get_logger
from .neptune_client import NeptuneClient
from .opensearch_client import OpenSearchClient

logger = get_logger(__name__)

SERVICE_NAMES = {
    'neptune': 'Amazon Neptune',
    'opensearch': 'Amazon OpenSearch',
    'bedrock_embed': 'Amazon Bedrock Embed',
    'hash_embed': 'Hash embedding',
    'memory_index': 'In-memory vector index'
}


def check_health(components: Optional[Dict[str, Any]] = None) -> bool:
    """Check the health of all system components.

    Args:
        components: Component name to object with health_check(); built from config if None

    Returns:
        True if all components are healthy, False otherwise
    """
    health_status = get_health_status(components)
    all_healthy = all(status.get('healthy', False) for status in health_status.values())

    if all_healthy:
        logger.info('All system components are healthy')
    else:
        logger.warning('Some system components are unhealthy')

    return all_healthy


def probe(name: str, component: Any) -> Dict[str, Any]:
    """Run one component's health_check(), turning exceptions into an unhealthy status."""
    service = SERVICE_NAMES.get(name, name)
    try:
        return {'healthy': bool(component.health_check()), 'service': service}
    except Exception as e:
        logger.error(f'{service} health check failed: {e}')
        return {'healthy': False, 'service': service, 'error': str(e)}


def _default_components(app_config: AppConfig) -> Dict[str, Callable[[], Any]]:
    factories = {'neptune': lambda: NeptuneClient(app_config.neptune)}
    if app_config.vector_backend == 'opensearch':
        factories['opensearch'] = lambda: OpenSearchClient(app_config.opensearch)
    if app_config.embedding_backend == 'bedrock':
        factories['bedrock_embed'] = lambda: BedrockEmbed(app_config.bedrock_embed)
    return factories


def get_health_status(components: Optional[Dict[str, Any]] = None, app_config: Optional[AppConfig] = None) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Args:
        components: Live component objects to probe; clients are created from config if None
        app_config: AppConfig used when creating clients (defaults to the process config)

    Returns:
        Dictionary with health status of each component
    """
    if components is not None:
        return {name: probe(name, component) for name, component in components.items()}

    app_config = app_config or config
    health_status = {}
    for name, factory in _default_components(app_config).items():
        try:
            component = factory()
        except Exception as e:
            health_status[name] = {'healthy': False, 'service': SERVICE_NAMES[name], 'error': str(e)}
            continue
        health_status[name] = probe(name, component)
    return health_status


def get_system_info(app_config: Optional[AppConfig] = None) -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    app_config = app_config or config
    return {
        'service_name': 'TierMem',
        'version': '1.0.0',
        'configuration': {
            'environment': app_config.environment,
            'embedding_backend': app_config.embedding_backend,
            'vector_backend': app_config.vector_backend,
            'bedrock_embed_model': app_config.bedrock_embed.model_id,
            'neptune_endpoint': app_config.neptune.endpoint
        },
        'health_status': get_health_status(app_config=app_config)
    }
