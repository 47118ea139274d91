"""
Amazon Bedrock LLM client wrapper with retry logic and error handling.
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (BotoCoreError, ClientError, ConnectTimeoutError, EndpointConnectionError,
                                 NoCredentialsError, ReadTimeoutError)

from .config import BedrockLLMConfig
from .errors import (AuthenticationError, ConnectionFailedError, OperationFailedError, OperationTimeoutError,
                     PermissionDeniedError, RateLimitedError, SentioMemoryError, SerializationError,
                     ValidationError)
from .logging_config import get_logger
from .retry import ExponentialBackoff, ResilientExecutor

logger = get_logger(__name__)

_AUTHENTICATION_CODES = {'UnrecognizedClientException', 'ExpiredTokenException', 'InvalidSignatureException'}
_UNAVAILABLE_CODES = {'ServiceUnavailableException', 'InternalServerException', 'ModelNotReadyException'}


def _retry_after(response: Dict[str, Any]) -> Optional[float]:
    headers = response.get('ResponseMetadata', {}).get('HTTPHeaders', {})
    value = headers.get('retry-after')
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        # HTTP-date form is not honoured
        return None


def classify_bedrock_error(operation: str, exc: Exception) -> SentioMemoryError:
    """
    Map a botocore exception onto the error taxonomy.

    Args:
        operation: Name of the failed operation
        exc: ClientError or BotoCoreError raised by the runtime client

    Returns:
        The matching SentioMemoryError (not raised)
    """
    if isinstance(exc, ClientError):
        error = exc.response.get('Error', {})
        code = error.get('Code', '')
        message = error.get('Message', str(exc))
        status = exc.response.get('ResponseMetadata', {}).get('HTTPStatusCode')

        if code == 'ThrottlingException' or status == 429:
            return RateLimitedError(_retry_after(exc.response), message)
        if code == 'AccessDeniedException':
            return PermissionDeniedError(operation, message)
        if code in _AUTHENTICATION_CODES:
            return AuthenticationError(message)
        if code == 'ValidationException':
            return ValidationError('request', message)
        if code == 'ModelTimeoutException':
            return OperationTimeoutError(operation)
        if code in _UNAVAILABLE_CODES:
            return ConnectionFailedError(f'{operation}: {message}')
        return OperationFailedError(operation, f'{code}: {message}')

    # Timeouts subclass the connection errors, check them first
    if isinstance(exc, (ReadTimeoutError, ConnectTimeoutError)):
        return OperationTimeoutError(operation)
    if isinstance(exc, NoCredentialsError):
        return AuthenticationError(str(exc))
    if isinstance(exc, (EndpointConnectionError, BotoCoreError)):
        return ConnectionFailedError(f'{operation}: {exc}')
    return OperationFailedError(operation, str(exc))


class BedrockLLM:
    """Amazon Bedrock LLM client with retry logic and error handling."""

    def __init__(self, config: BedrockLLMConfig, client=None, executor: Optional[ResilientExecutor] = None):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
            client: Pre-built bedrock-runtime client, created from config if None
            executor: Retry executor, exponential backoff from config if None
        """
        self.config = config
        self.model_id = config.model_id

        # Create Bedrock runtime client with timeout configuration
        self.bedrock_runtime = client if client is not None else boto3.client(
            'bedrock-runtime',
            region_name=config.region,
            config=BotoConfig(
                connect_timeout=60,
                read_timeout=600,
                retries={'max_attempts': 0}  # We handle retries manually
            ))
        self.executor = executor or ResilientExecutor(max_retries=config.retry_attempts,
                                                      policy=ExponentialBackoff(config.retry_delay,
                                                                                config.max_retry_delay))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    async def generate_response(self,
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
            SentioMemoryError: If the request fails after all retries or fails fatally
        """
        inf_params = {
            'maxTokens': max_tokens if max_tokens is not None else self.config.max_tokens,
            'temperature': temperature if temperature is not None else self.config.temperature,
            'stopSequences': stop_sequences or [],
        }
        request = {
            'modelId': self.model_id,
            'messages': messages,
            'system': [{
                'text': system_prompt
            }],
            'inferenceConfig': inf_params,
        }

        async def attempt():
            try:
                response = await asyncio.to_thread(self.bedrock_runtime.converse, **request)
            except (ClientError, BotoCoreError) as e:
                raise classify_bedrock_error('bedrock_converse', e) from e
            return self._parse_response(response)

        msg, invoke_metrics = await self.executor.execute(attempt, 'bedrock_converse')
        logger.debug(f'Bedrock LLM response generated successfully (length: {len(msg)})')
        return msg, invoke_metrics

    @staticmethod
    def _parse_response(response: Dict[str, Any]) -> Tuple[str, Optional[Dict[str, Any]]]:
        try:
            blocks = response['output']['message']['content']
        except (KeyError, TypeError) as e:
            raise SerializationError(f'Unexpected Bedrock response shape: {e}') from e

        msg = ''.join(block.get('text', '') for block in blocks)
        invoke_metrics = None
        if 'usage' in response or 'metrics' in response:
            invoke_metrics = {**response.get('usage', {}), **response.get('metrics', {})}
        return msg, invoke_metrics

    async def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_messages = [{'role': 'user', 'content': [{'text': 'Hi'}]}]
            response, _ = await self.generate_response(messages=test_messages,
                                                       system_prompt="You are a helpful assistant. Respond with just 'OK'.",
                                                       max_tokens=10,
                                                       temperature=0.0)
            return len(response.strip()) > 0

        except SentioMemoryError as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
