"""
Health checks for the services the pipeline depends on.
"""

from typing import Any, Callable, Dict

from .bedrock_llm import BedrockLLM
from .config import AppConfig, config
from .logging_config import get_logger
from .opensearch_client import OpenSearchClient

logger = get_logger(__name__)


def _check_service(service: str, check: Callable[[], bool], **details: Any) -> Dict[str, Any]:
    """Run one check; a check that raises counts as unhealthy."""
    try:
        healthy = bool(check())
    except Exception as e:
        logger.warning(f'{service} health check raised: {e}')
        return {'healthy': False, 'service': service, 'error': str(e), **details}
    return {'healthy': healthy, 'service': service, **details}


def get_health_status(app_config: AppConfig = config) -> Dict[str, Dict[str, Any]]:
    """Health of the Bedrock model and, unless profiles are kept in memory, OpenSearch.

    Returns:
        Component name -> {'healthy', 'service', ...details}
    """
    status = {
        'bedrock_llm': _check_service('Amazon Bedrock LLM', lambda: BedrockLLM(app_config.bedrock_llm).health_check(),
                                      model=app_config.bedrock_llm.model_id),
    }
    if app_config.mcp.profile_store != 'memory':
        status['opensearch'] = _check_service('Amazon OpenSearch', lambda: OpenSearchClient(app_config.opensearch).health_check(),
                                              endpoint=app_config.opensearch.endpoint)
    return status


def check_health(app_config: AppConfig = config) -> Dict[str, Any]:
    """Overall verdict plus per-component status and the active pipeline settings."""
    components = get_health_status(app_config)
    healthy = all(component['healthy'] for component in components.values())
    if healthy:
        logger.info('All system components are healthy')
    else:
        unhealthy = [name for name, component in components.items() if not component['healthy']]
        logger.warning(f'Unhealthy components: {unhealthy}')

    return {
        'healthy': healthy,
        'components': components,
        'pipeline': {
            'chunk_window': app_config.pipeline.chunk_window,
            'llm_timeout_seconds': app_config.pipeline.llm_timeout_seconds,
            'auto_advance': app_config.pipeline.auto_advance,
            'profile_store': app_config.mcp.profile_store,
        },
    }
