"""
Configuration management for AWS services and pipeline settings.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float
    read_timeout: int


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch profile storage."""
    endpoint: str
    port: int
    region: str
    index_name: str


@dataclass
class PipelineConfig:
    """Configuration for the analysis and parsing pipeline."""
    chunk_window: int
    llm_timeout_seconds: float
    analysis_temperature: float
    analysis_max_tokens: int
    parsing_temperature: float
    parsing_max_tokens: int
    auto_advance: bool
    field_mapping_path: str
    job_history_limit: int


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int
    profile_store: str  # opensearch | memory


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    opensearch: OpenSearchConfig
    pipeline: PipelineConfig
    mcp: MCPConfig


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '1000')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.7')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')),
                                          read_timeout=int(os.getenv('BEDROCK_LLM_READ_TIMEOUT', '60')))

    # Profile storage configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'brand_foundation'))

    # Pipeline configuration
    default_mapping_path = os.path.join(os.path.dirname(os.path.dirname(__file__)), 'field_mapping.json')
    pipeline_config = PipelineConfig(chunk_window=int(os.getenv('PIPELINE_CHUNK_WINDOW', '15')),
                                     llm_timeout_seconds=float(os.getenv('PIPELINE_LLM_TIMEOUT_SECONDS', '90')),
                                     analysis_temperature=float(os.getenv('PIPELINE_ANALYSIS_TEMPERATURE', '0.7')),
                                     analysis_max_tokens=int(os.getenv('PIPELINE_ANALYSIS_MAX_TOKENS', '1000')),
                                     parsing_temperature=float(os.getenv('PIPELINE_PARSING_TEMPERATURE', '0.2')),
                                     parsing_max_tokens=int(os.getenv('PIPELINE_PARSING_MAX_TOKENS', '800')),
                                     auto_advance=_env_bool('PIPELINE_AUTO_ADVANCE', 'true'),
                                     field_mapping_path=os.getenv('FIELD_MAPPING_PATH', default_mapping_path),
                                     job_history_limit=int(os.getenv('PIPELINE_JOB_HISTORY_LIMIT', '500')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')),
                           profile_store=os.getenv('MCP_PROFILE_STORE', 'opensearch'))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     opensearch=opensearch_config,
                     pipeline=pipeline_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
