"""
Core broker types, configuration and errors shared by every driver.
"""

from brokerz.core.codec import JSONCodec, MessageCodec, default_codec, format_duration
from brokerz.core.config import (
    BrokerConfig,
    KafkaConfig,
    RabbitMQConfig,
    RedisConfig,
    SASLConfig,
    TLSConfig,
)
from brokerz.core.env import EnvManager, get_env, parse_duration
from brokerz.core.exceptions import (
    AlreadySubscribedError,
    BackendError,
    BroadcastError,
    BrokerClosedError,
    BrokerError,
    ConnectionFailedError,
    DefaultUnavailableError,
    DriverNotConfiguredError,
    DriverNotSupportedError,
    InvalidConfigurationError,
    MaxRetriesExceededError,
    MessageTooLargeError,
    MirrorError,
    MissingDependencyError,
    NotConnectedError,
    QueueNotFoundError,
    SerializationError,
    TopicNotFoundError,
)
from brokerz.core.logger import configure_default_logging, get_logger, set_logger
from brokerz.core.retry import RetryPolicy
from brokerz.core.types import (
    BrokerStats,
    Job,
    JobHandler,
    Message,
    MessageHandler,
    Subscription,
    TopicConfig,
    TopicInfo,
)

__all__ = [
    # Types
    "BrokerStats",
    "Job",
    "JobHandler",
    "Message",
    "MessageHandler",
    "Subscription",
    "TopicConfig",
    "TopicInfo",

    # Codec
    "JSONCodec",
    "MessageCodec",
    "default_codec",
    "format_duration",

    # Configuration
    "BrokerConfig",
    "EnvManager",
    "KafkaConfig",
    "RabbitMQConfig",
    "RedisConfig",
    "RetryPolicy",
    "SASLConfig",
    "TLSConfig",
    "get_env",
    "parse_duration",

    # Logging
    "configure_default_logging",
    "get_logger",
    "set_logger",

    # Errors
    "AlreadySubscribedError",
    "BackendError",
    "BroadcastError",
    "BrokerClosedError",
    "BrokerError",
    "ConnectionFailedError",
    "DefaultUnavailableError",
    "DriverNotConfiguredError",
    "DriverNotSupportedError",
    "InvalidConfigurationError",
    "MaxRetriesExceededError",
    "MessageTooLargeError",
    "MirrorError",
    "MissingDependencyError",
    "NotConnectedError",
    "QueueNotFoundError",
    "SerializationError",
    "TopicNotFoundError",
]
