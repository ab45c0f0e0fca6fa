"""
Amazon Bedrock service module.
The model provider behind the streaming request pipeline: it issues a single
streaming request and converts Bedrock's event stream into usage / text increments.
"""

import boto3
import json
import logging
from typing import Generator, List, Dict, Optional, Any
from botocore.exceptions import ClientError, NoCredentialsError
from dataclasses import dataclass
from config import (
    aws_config,
    model_config,
    get_credentials_info,
    get_model_config,
    get_max_output_tokens,
    requires_inference_profile,
    calculate_cost,
)


logger = logging.getLogger(__name__)


class BedrockError(Exception):
    """Custom exception for Bedrock service errors"""
    pass


@dataclass
class GenerationConfig:
    """Configuration for a single generation request"""
    max_tokens: int = 8192
    temperature: Optional[float] = None
    stop_sequences: Optional[List[str]] = None
    throughput_mode: str = "cross-region"


class BedrockService:
    """
    Service class for Amazon Bedrock interactions.
    `create_message` is the only entry point the task engine uses.
    """

    def __init__(
        self,
        model_id: Optional[str] = None,
        region: Optional[str] = None,
        client: Any = None,
    ):
        self.model_id = model_id or model_config.model_id
        self.region = region or aws_config.region

        self.client = client or self._create_client()
        logger.info(f"BedrockService initialized with model: {self.model_id} ({get_credentials_info()})")

    def _create_client(self) -> Any:
        """Create and configure the Bedrock runtime client"""
        try:
            session_kwargs = {"region_name": self.region}

            if aws_config.has_profile():
                session_kwargs["profile_name"] = aws_config.profile_name
            elif aws_config.has_explicit_credentials():
                session_kwargs["aws_access_key_id"] = aws_config.access_key_id
                session_kwargs["aws_secret_access_key"] = aws_config.secret_access_key
                if aws_config.has_session_token():
                    session_kwargs["aws_session_token"] = aws_config.session_token

            session = boto3.Session(**session_kwargs)
            return session.client("bedrock-runtime")

        except NoCredentialsError:
            raise BedrockError("AWS credentials not configured.")
        except Exception as e:
            raise BedrockError(f"Failed to initialize Bedrock client: {e}")

    def _get_model_identifier(self, model_id: str, config: GenerationConfig) -> str:
        """Get the appropriate model identifier based on throughput mode"""
        if config.throughput_mode == "cross-region":
            if model_id.startswith(("us.", "eu.", "ap.")):
                return model_id
            elif requires_inference_profile(model_id):
                region_prefix = "eu" if self.region.startswith("eu-") else "us"
                return f"{region_prefix}.{model_id}"

        return get_model_config(model_id).get("base_id", model_id)

    def _format_request_body(
        self,
        messages: List[Dict],
        system_prompt: Optional[str],
        model_id: str,
        config: GenerationConfig,
    ) -> Dict[str, Any]:
        """Format the Anthropic request body with prompt caching on the system prompt
        and on the last two user turns."""
        formatted_messages = []
        for msg in messages:
            content = msg.get("content")
            if isinstance(content, str):
                content = [{"type": "text", "text": content or "(no content)"}]
            elif not content:
                content = [{"type": "text", "text": "(no content)"}]
            else:
                content = [dict(b) for b in content]
            formatted_messages.append({"role": msg["role"], "content": content})

        user_indices = [i for i, m in enumerate(formatted_messages) if m["role"] == "user"]
        for idx in user_indices[-2:]:
            formatted_messages[idx]["content"][-1]["cache_control"] = {"type": "ephemeral"}

        body: Dict[str, Any] = {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": min(config.max_tokens, get_max_output_tokens(model_id)),
            "messages": formatted_messages,
        }
        if config.temperature is not None:
            body["temperature"] = config.temperature
        if config.stop_sequences:
            body["stop_sequences"] = config.stop_sequences
        if system_prompt:
            body["system"] = [{
                "type": "text",
                "text": system_prompt,
                "cache_control": {"type": "ephemeral"},
            }]
        return body

    def create_message(
        self,
        system_prompt: str,
        messages: List[Dict],
        config: Optional[GenerationConfig] = None,
        model_id: Optional[str] = None,
    ) -> Generator[Dict[str, Any], None, None]:
        """
        Stream one response from Amazon Bedrock as increments (see `increments_from_chunk`).
        Closing the generator closes the underlying event stream.
        """
        current_model = model_id or self.model_id
        gen_config = config or GenerationConfig(
            max_tokens=model_config.max_tokens,
            temperature=model_config.temperature,
        )

        model_identifier = self._get_model_identifier(current_model, gen_config)
        request_body = self._format_request_body(messages, system_prompt, current_model, gen_config)
        logger.info(f"Streaming from model: {model_identifier} ({len(messages)} messages)")

        try:
            response = self.client.invoke_model_with_response_stream(
                modelId=model_identifier,
                body=json.dumps(request_body),
                contentType="application/json",
                accept="application/json"
            )
        except ClientError as e:
            raise _client_error(e, "Bedrock API error")

        stream = response["body"]
        try:
            for event in stream:
                if "chunk" not in event:
                    # modelStreamErrorException, throttlingException, ...
                    name, detail = next(iter(event.items()), ("unknown", {}))
                    raise BedrockError(f"Streaming error: {name}: {detail}")
                chunk = json.loads(event["chunk"]["bytes"])
                yield from increments_from_chunk(chunk, current_model)
        except ClientError as e:
            raise _client_error(e, "Streaming error")
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()


def _client_error(e: ClientError, prefix: str) -> BedrockError:
    error = e.response.get("Error", {})
    code = error.get("Code", "Unknown")
    message = error.get("Message", str(e))
    logger.error(f"{prefix}: {code} - {message}")
    if code in ("ExpiredTokenException", "InvalidSignatureException"):
        return BedrockError("AWS credentials expired. Please refresh.")
    return BedrockError(f"{prefix}: {message}")


def _usage(model_id: str, input_tokens: int = 0, output_tokens: int = 0,
           cache_write: int = 0, cache_read: int = 0) -> Dict[str, Any]:
    return {
        "type": "usage",
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "cache_write_tokens": cache_write,
        "cache_read_tokens": cache_read,
        "total_cost": calculate_cost(model_id, input_tokens, output_tokens, cache_write, cache_read),
    }


def increments_from_chunk(chunk: Dict[str, Any], model_id: str) -> List[Dict[str, Any]]:
    """
    Convert one decoded Anthropic stream event into increments:
      {"type": "usage", input_tokens, output_tokens, cache_write_tokens, cache_read_tokens, total_cost}
      {"type": "text", "text"}
    Events that carry neither produce nothing.
    """
    event_type = chunk.get("type", "")

    if event_type == "message_start":
        usage = chunk.get("message", {}).get("usage", {})
        return [_usage(
            model_id,
            usage.get("input_tokens", 0),
            usage.get("output_tokens", 0),
            usage.get("cache_creation_input_tokens", 0),
            usage.get("cache_read_input_tokens", 0),
        )]
    if event_type == "message_delta":
        return [_usage(model_id, output_tokens=chunk.get("usage", {}).get("output_tokens", 0))]

    if event_type == "content_block_start":
        block = chunk.get("content_block", {})
        text = block.get("text") if block.get("type") == "text" else None
    elif event_type == "content_block_delta":
        delta = chunk.get("delta", {})
        text = delta.get("text") if delta.get("type") == "text_delta" else None
    else:
        text = None
    return [{"type": "text", "text": text}] if text else []
