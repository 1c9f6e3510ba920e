"""
Broker configuration.

One dataclass per backend plus the top-level BrokerConfig. Every class can
be built from environment variables with ``from_env()``; the variable names
and defaults are listed on each class.

Usage:
    >>> from brokerz.core.config import BrokerConfig
    >>> config = BrokerConfig.from_env()
    >>> config.validate()
"""

from __future__ import annotations

from dataclasses import dataclass, field
from urllib.parse import quote

from brokerz.core.env import EnvManager, get_env
from brokerz.core.exceptions import InvalidConfigurationError
from brokerz.core.retry import RetryPolicy

EXCHANGE_TYPES = ("topic", "direct", "fanout", "x-delayed-message")
REQUIRED_ACKS = (0, 1, -1)
COMPRESSIONS = ("none", "gzip", "snappy", "lz4", "zstd")
INITIAL_OFFSETS = ("oldest", "newest")
SASL_MECHANISMS = ("PLAIN", "SCRAM-SHA-256", "SCRAM-SHA-512")


@dataclass
class TLSConfig:
    """Client certificate settings shared by the log and KV drivers."""

    enabled: bool = False
    cert_file: str | None = None
    key_file: str | None = None
    ca_file: str | None = None
    insecure_skip_verify: bool = False

    @classmethod
    def from_env(cls, prefix: str, env: EnvManager | None = None) -> TLSConfig:
        """
        Read ``<prefix>_TLS_ENABLE``, ``_CERT_FILE``, ``_KEY_FILE``,
        ``_CA_FILE`` and ``_INSECURE_SKIP_VERIFY``.
        """
        env = env or get_env()
        return cls(
            enabled=env.get_bool(f"{prefix}_TLS_ENABLE", False),
            cert_file=env.get(f"{prefix}_TLS_CERT_FILE") or None,
            key_file=env.get(f"{prefix}_TLS_KEY_FILE") or None,
            ca_file=env.get(f"{prefix}_TLS_CA_FILE") or None,
            insecure_skip_verify=env.get_bool(f"{prefix}_TLS_INSECURE_SKIP_VERIFY", False),
        )


@dataclass
class SASLConfig:
    enabled: bool = False
    mechanism: str = "PLAIN"
    username: str = ""
    password: str = ""

    @classmethod
    def from_env(cls, env: EnvManager | None = None) -> SASLConfig:
        env = env or get_env()
        return cls(
            enabled=env.get_bool("KAFKA_SASL_ENABLE", False),
            mechanism=env.get("KAFKA_SASL_MECHANISM", "PLAIN"),
            username=env.get("KAFKA_SASL_USERNAME", ""),
            password=env.get("KAFKA_SASL_PASSWORD", ""),
        )


@dataclass
class RabbitMQConfig:
    """
    AMQP driver configuration.

    Environment variables (prefix ``RABBITMQ_``): URL, HOST, PORT, USERNAME,
    PASSWORD, VHOST, EXCHANGE, EXCHANGE_TYPE, CONNECTION_TIMEOUT,
    HEARTBEAT_INTERVAL, PREFETCH_COUNT, DURABLE, AUTO_DELETE,
    RECONNECT_INTERVAL.
    """

    url: str = ""
    host: str = "localhost"
    port: int = 5672
    username: str = "guest"
    password: str = "guest"
    vhost: str = "/"
    exchange: str = "go_template_exchange"
    exchange_type: str = "topic"
    connection_timeout: float = 30.0
    heartbeat_interval: float = 60.0
    prefetch_count: int = 10
    durable: bool = True
    auto_delete: bool = False
    reconnect_interval: float = 5.0

    @classmethod
    def from_env(cls, env: EnvManager | None = None) -> RabbitMQConfig:
        env = env or get_env()
        return cls(
            url=env.get("RABBITMQ_URL", ""),
            host=env.get("RABBITMQ_HOST", "localhost"),
            port=env.get_int("RABBITMQ_PORT", 5672),
            username=env.get("RABBITMQ_USERNAME", "guest"),
            password=env.get("RABBITMQ_PASSWORD", "guest"),
            vhost=env.get("RABBITMQ_VHOST", "/"),
            exchange=env.get("RABBITMQ_EXCHANGE", "go_template_exchange"),
            exchange_type=env.get("RABBITMQ_EXCHANGE_TYPE", "topic"),
            connection_timeout=env.get_duration("RABBITMQ_CONNECTION_TIMEOUT", 30.0),
            heartbeat_interval=env.get_duration("RABBITMQ_HEARTBEAT_INTERVAL", 60.0),
            prefetch_count=env.get_int("RABBITMQ_PREFETCH_COUNT", 10),
            durable=env.get_bool("RABBITMQ_DURABLE", True),
            auto_delete=env.get_bool("RABBITMQ_AUTO_DELETE", False),
            reconnect_interval=env.get_duration("RABBITMQ_RECONNECT_INTERVAL", 5.0),
        )

    @property
    def connection_url(self) -> str:
        """``url`` when set, otherwise an amqp:// URL built from the parts."""
        if self.url:
            return self.url
        vhost = quote(self.vhost, safe="")
        return (
            f"amqp://{quote(self.username, safe='')}:{quote(self.password, safe='')}"
            f"@{self.host}:{self.port}/{vhost}"
        )

    def validate(self) -> None:
        if self.exchange_type not in EXCHANGE_TYPES:
            msg = f"Unsupported exchange type: {self.exchange_type}"
            raise InvalidConfigurationError(msg, field="exchange_type", value=self.exchange_type)
        if not self.exchange:
            msg = "RabbitMQ exchange name is required"
            raise InvalidConfigurationError(msg, field="exchange")
        if self.prefetch_count < 0:
            msg = "prefetch_count must be >= 0"
            raise InvalidConfigurationError(msg, field="prefetch_count", value=self.prefetch_count)


@dataclass
class KafkaConfig:
    """
    Partitioned-log driver configuration.

    Environment variables (prefix ``KAFKA_``): BROKERS (comma-separated),
    GROUP_ID, CLIENT_ID, VERSION, CONNECT_TIMEOUT, SESSION_TIMEOUT,
    HEARTBEAT_INTERVAL, REBALANCE_TIMEOUT, RETURN_SUCCESSES, REQUIRED_ACKS,
    COMPRESSION, FLUSH_FREQUENCY, ENABLE_AUTO_COMMIT, AUTO_COMMIT_INTERVAL,
    INITIAL_OFFSET, plus KAFKA_SASL_* and KAFKA_TLS_*.

    Accepted but ignored: version (aiokafka negotiates the protocol
    version with the brokers), return_successes (every send waits for its
    delivery result), enable_auto_commit and auto_commit_interval (offsets
    are committed manually once a message has been handled).
    """

    brokers: list[str] = field(default_factory=lambda: ["localhost:9092"])
    group_id: str = "go-template-consumer-group"
    client_id: str = "go-template-client"
    version: str = "2.6.0"
    connect_timeout: float = 30.0
    session_timeout: float = 30.0
    heartbeat_interval: float = 3.0
    rebalance_timeout: float = 60.0
    return_successes: bool = True
    required_acks: int = 1
    compression: str = "snappy"
    flush_frequency: float = 0.1
    enable_auto_commit: bool = True
    auto_commit_interval: float = 1.0
    initial_offset: str = "newest"
    sasl: SASLConfig = field(default_factory=SASLConfig)
    tls: TLSConfig = field(default_factory=TLSConfig)

    @classmethod
    def from_env(cls, env: EnvManager | None = None) -> KafkaConfig:
        env = env or get_env()
        return cls(
            brokers=env.get_list("KAFKA_BROKERS", ["localhost:9092"]),
            group_id=env.get("KAFKA_GROUP_ID", "go-template-consumer-group"),
            client_id=env.get("KAFKA_CLIENT_ID", "go-template-client"),
            version=env.get("KAFKA_VERSION", "2.6.0"),
            connect_timeout=env.get_duration("KAFKA_CONNECT_TIMEOUT", 30.0),
            session_timeout=env.get_duration("KAFKA_SESSION_TIMEOUT", 30.0),
            heartbeat_interval=env.get_duration("KAFKA_HEARTBEAT_INTERVAL", 3.0),
            rebalance_timeout=env.get_duration("KAFKA_REBALANCE_TIMEOUT", 60.0),
            return_successes=env.get_bool("KAFKA_RETURN_SUCCESSES", True),
            required_acks=env.get_int("KAFKA_REQUIRED_ACKS", 1),
            compression=env.get("KAFKA_COMPRESSION", "snappy"),
            flush_frequency=env.get_duration("KAFKA_FLUSH_FREQUENCY", 0.1),
            enable_auto_commit=env.get_bool("KAFKA_ENABLE_AUTO_COMMIT", True),
            auto_commit_interval=env.get_duration("KAFKA_AUTO_COMMIT_INTERVAL", 1.0),
            initial_offset=env.get("KAFKA_INITIAL_OFFSET", "newest"),
            sasl=SASLConfig.from_env(env),
            tls=TLSConfig.from_env("KAFKA", env),
        )

    @property
    def bootstrap_servers(self) -> str:
        return ",".join(self.brokers)

    def validate(self) -> None:
        if not self.brokers:
            msg = "At least one Kafka broker address is required"
            raise InvalidConfigurationError(msg, field="brokers")
        if self.required_acks not in REQUIRED_ACKS:
            msg = f"Unsupported required_acks: {self.required_acks}"
            raise InvalidConfigurationError(msg, field="required_acks", value=self.required_acks)
        if self.compression not in COMPRESSIONS:
            msg = f"Unsupported compression: {self.compression}"
            raise InvalidConfigurationError(msg, field="compression", value=self.compression)
        if self.initial_offset not in INITIAL_OFFSETS:
            msg = f"Unsupported initial offset: {self.initial_offset}"
            raise InvalidConfigurationError(msg, field="initial_offset", value=self.initial_offset)
        if self.sasl.enabled and self.sasl.mechanism not in SASL_MECHANISMS:
            msg = f"Unsupported SASL mechanism: {self.sasl.mechanism}"
            raise InvalidConfigurationError(msg, field="sasl.mechanism", value=self.sasl.mechanism)


@dataclass
class RedisConfig:
    """
    KV pub/sub driver configuration.

    Environment variables (prefix ``MESSAGE_BROKER_REDIS_``): HOST, PORT,
    PASSWORD, DB, POOL_SIZE, MIN_IDLE_CONNS, MAX_RETRIES, CONNECT_TIMEOUT,
    READ_TIMEOUT, WRITE_TIMEOUT, IDLE_TIMEOUT, TLS_*.

    redis-py has one socket timeout, so the larger of read_timeout and
    write_timeout is used. Connections idle longer than idle_timeout are
    health-checked before reuse. min_idle_conns is accepted but ignored:
    the pool opens connections on demand.
    """

    host: str = "localhost"
    port: int = 6379
    password: str = ""
    db: int = 1
    pool_size: int = 10
    min_idle_conns: int = 3
    max_retries: int = 3
    connect_timeout: float = 5.0
    read_timeout: float = 3.0
    write_timeout: float = 3.0
    idle_timeout: float = 300.0
    tls: TLSConfig = field(default_factory=TLSConfig)

    @classmethod
    def from_env(cls, env: EnvManager | None = None) -> RedisConfig:
        env = env or get_env()
        prefix = "MESSAGE_BROKER_REDIS"
        return cls(
            host=env.get(f"{prefix}_HOST", "localhost"),
            port=env.get_int(f"{prefix}_PORT", 6379),
            password=env.get(f"{prefix}_PASSWORD", ""),
            db=env.get_int(f"{prefix}_DB", 1),
            pool_size=env.get_int(f"{prefix}_POOL_SIZE", 10),
            min_idle_conns=env.get_int(f"{prefix}_MIN_IDLE_CONNS", 3),
            max_retries=env.get_int(f"{prefix}_MAX_RETRIES", 3),
            connect_timeout=env.get_duration(f"{prefix}_CONNECT_TIMEOUT", 5.0),
            read_timeout=env.get_duration(f"{prefix}_READ_TIMEOUT", 3.0),
            write_timeout=env.get_duration(f"{prefix}_WRITE_TIMEOUT", 3.0),
            idle_timeout=env.get_duration(f"{prefix}_IDLE_TIMEOUT", 300.0),
            tls=TLSConfig.from_env(prefix, env),
        )

    def validate(self) -> None:
        if not self.host:
            msg = "Redis host is required"
            raise InvalidConfigurationError(msg, field="host")
        if self.pool_size < 1:
            msg = "pool_size must be >= 1"
            raise InvalidConfigurationError(msg, field="pool_size", value=self.pool_size)


@dataclass
class BrokerConfig:
    """
    Top-level broker configuration.

    Environment variables:
        MESSAGE_BROKER_ENABLED: Enable the broker layer (default: false)
        MESSAGE_BROKER_DRIVER: Default driver - amqp/rabbitmq, log/kafka,
            kv/redis or memory (default: redis)
        MESSAGE_BROKER_MAX_RETRIES, MESSAGE_BROKER_RETRY_INITIAL_INTERVAL,
        MESSAGE_BROKER_RETRY_MAX_INTERVAL, MESSAGE_BROKER_RETRY_MULTIPLIER,
        MESSAGE_BROKER_RETRY_RANDOM_FACTOR: retry policy
    """

    enabled: bool = False
    driver: str = "redis"
    rabbitmq: RabbitMQConfig | None = field(default_factory=RabbitMQConfig)
    kafka: KafkaConfig | None = field(default_factory=KafkaConfig)
    redis: RedisConfig | None = field(default_factory=RedisConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    @classmethod
    def from_env(cls, env: EnvManager | None = None) -> BrokerConfig:
        env = env or get_env()
        return cls(
            enabled=env.get_bool("MESSAGE_BROKER_ENABLED", False),
            driver=env.get("MESSAGE_BROKER_DRIVER", "redis"),
            rabbitmq=RabbitMQConfig.from_env(env),
            kafka=KafkaConfig.from_env(env),
            redis=RedisConfig.from_env(env),
            retry=RetryPolicy(
                max_retries=env.get_int("MESSAGE_BROKER_MAX_RETRIES", 3),
                initial_interval=env.get_duration("MESSAGE_BROKER_RETRY_INITIAL_INTERVAL", 1.0),
                max_interval=env.get_duration("MESSAGE_BROKER_RETRY_MAX_INTERVAL", 30.0),
                multiplier=env.get_float("MESSAGE_BROKER_RETRY_MULTIPLIER", 2.0),
                random_factor=env.get_float("MESSAGE_BROKER_RETRY_RANDOM_FACTOR", 0.1),
            ),
        )

    def section_for(self, driver: str) -> RabbitMQConfig | KafkaConfig | RedisConfig | None:
        """
        Return the configuration block for a canonical driver name.

        Raises:
            InvalidConfigurationError: If the block is missing
        """
        sections = {"amqp": self.rabbitmq, "log": self.kafka, "kv": self.redis}
        if driver not in sections:
            return None
        section = sections[driver]
        if section is None:
            msg = f"No configuration for driver '{driver}'"
            raise InvalidConfigurationError(msg, field=driver)
        return section

    def validate(self) -> None:
        """
        Validate the retry policy and the default driver's block.

        Raises:
            InvalidConfigurationError: On the first problem found
            DriverNotSupportedError: If ``driver`` is unknown
        """
        from brokerz.drivers.factory import normalize_driver_name

        self.retry.validate()
        section = self.section_for(normalize_driver_name(self.driver))
        if section is not None:
            section.validate()
