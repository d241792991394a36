"""
Amazon Bedrock LLM client wrapper with retry logic and error handling.

Provides the two capabilities the pipeline needs: free-text completion for
analyzers and tool-use (function-calling) extraction for parsers.
"""

import json
import random
import threading
import time
from contextvars import ContextVar
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, TypeVar

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockLLMConfig
from .logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar('T')

# Set per job by the job tracker; once set, no further attempt is started
call_cancelled: ContextVar[Optional[threading.Event]] = ContextVar('call_cancelled', default=None)


class BedrockLLMError(Exception):
    """Custom exception for Bedrock LLM errors."""
    pass


class LLMCapability(Protocol):
    """Injected LLM capability; tests substitute deterministic stand-ins."""

    def generate_response(self,
                          messages: List[Dict[str, Any]],
                          system_prompt: str,
                          max_tokens: Optional[int] = None,
                          temperature: Optional[float] = None,
                          stop_sequences: Optional[List[str]] = None) -> Tuple[str, Optional[Dict[str, Any]]]:
        """Return (text, invoke_metrics) for a conversation."""
        ...

    def extract_structured(self,
                           messages: List[Dict[str, Any]],
                           system_prompt: str,
                           tool_spec: Dict[str, Any],
                           max_tokens: Optional[int] = None,
                           temperature: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Return the arguments the model passed to ``tool_spec``, or None if it declined."""
        ...


class BedrockLLM:
    """Amazon Bedrock LLM client with retry logic and error handling."""

    def __init__(self, config: BedrockLLMConfig):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
        """
        self.config = config
        self.model_id = config.model_id

        # Create Bedrock runtime client with timeout configuration
        self.bedrock_runtime = boto3.client(
            'bedrock-runtime',
            region_name=config.region,
            config=BotoConfig(
                connect_timeout=10,
                read_timeout=config.read_timeout,
                retries={'max_attempts': 0}  # We handle retries manually
            ))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def _with_retries(self, operation: str, fn: Callable[[], T]) -> T:
        cancelled = call_cancelled.get()
        for attempt in range(self.config.retry_attempts):
            if cancelled is not None and cancelled.is_set():
                logger.warning(f'Bedrock LLM {operation} abandoned before attempt {attempt + 1}: caller gave up')
                raise BedrockLLMError(f'Bedrock LLM {operation} cancelled')

            try:
                logger.debug(f'Bedrock LLM {operation} attempt {attempt + 1}/{self.config.retry_attempts}')
                return fn()

            except (ClientError, BotoCoreError, json.JSONDecodeError) as e:
                logger.warning(f'Bedrock LLM {operation} attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    if cancelled is not None:
                        cancelled.wait(delay)
                    else:
                        time.sleep(delay)
                else:
                    raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts: {e}')

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock LLM {operation}: {e}')
                raise BedrockLLMError(f'Unexpected Bedrock LLM error: {e}')

        raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts')

    def generate_response(self,
                          messages: List[Dict[str, Any]],
                          system_prompt: str,
                          max_tokens: Optional[int] = None,
                          temperature: Optional[float] = None,
                          stop_sequences: Optional[List[str]] = None) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Generate response using Bedrock LLM with retry logic.

        Args:
            messages: List of message dictionaries in Bedrock format
            system_prompt: System prompt for the conversation
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None)
            stop_sequences: Stop sequences for generation

        Returns:
            Tuple of (response_text, invoke_metrics)

        Raises:
            BedrockLLMError: If all retry attempts fail
        """
        inf_params = {
            'maxTokens': max_tokens if max_tokens is not None else self.config.max_tokens,
            'temperature': temperature if temperature is not None else self.config.temperature,
            'stopSequences': stop_sequences or [],
        }

        def _call() -> Tuple[str, Optional[Dict[str, Any]]]:
            stream = self.bedrock_runtime.converse_stream(modelId=self.model_id,
                                                          messages=messages,
                                                          system=[{'text': system_prompt}],
                                                          inferenceConfig=inf_params).get('stream')

            msg = ''
            invoke_metrics = None

            if stream:
                for event in stream:
                    if 'contentBlockDelta' in event:
                        msg += event['contentBlockDelta']['delta'].get('text', '')
                    if 'metadata' in event:
                        invoke_metrics = {**event['metadata']['usage'], **event['metadata']['metrics']}

            logger.debug(f'Bedrock LLM response generated successfully (length: {len(msg)})')
            return msg, invoke_metrics

        return self._with_retries('completion', _call)

    def extract_structured(self,
                           messages: List[Dict[str, Any]],
                           system_prompt: str,
                           tool_spec: Dict[str, Any],
                           max_tokens: Optional[int] = None,
                           temperature: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """
        Offer a single tool to the model and return the arguments it calls it with.

        Args:
            messages: List of message dictionaries in Bedrock format
            system_prompt: System prompt for the extraction
            tool_spec: Bedrock toolSpec (name, description, inputSchema)
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None)

        Returns:
            Tool input dict, or None when the model answered without calling the tool

        Raises:
            BedrockLLMError: If all retry attempts fail
        """
        inf_params = {
            'maxTokens': max_tokens if max_tokens is not None else self.config.max_tokens,
            'temperature': temperature if temperature is not None else self.config.temperature,
        }
        tool_config = {'tools': [{'toolSpec': tool_spec}], 'toolChoice': {'auto': {}}}

        def _call() -> Optional[Dict[str, Any]]:
            response = self.bedrock_runtime.converse(modelId=self.model_id,
                                                     messages=messages,
                                                     system=[{'text': system_prompt}],
                                                     inferenceConfig=inf_params,
                                                     toolConfig=tool_config)

            content = response.get('output', {}).get('message', {}).get('content', [])
            for block in content:
                tool_use = block.get('toolUse')
                if tool_use and tool_use.get('name') == tool_spec['name']:
                    logger.debug(f"Bedrock LLM called tool {tool_spec['name']}")
                    return tool_use.get('input') or {}

            logger.debug(f"Bedrock LLM declined to call tool {tool_spec['name']} (stop: {response.get('stopReason')})")
            return None

        return self._with_retries('extraction', _call)

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_messages = [{'role': 'user', 'content': [{'text': 'Hi'}]}]
            response, _ = self.generate_response(messages=test_messages,
                                                 system_prompt="You are a helpful assistant. Respond with just 'OK'.",
                                                 max_tokens=10,
                                                 temperature=0.0)
            return len(response.strip()) > 0

        except Exception as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
