import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_topic_routes(raw: str) -> dict:
    """Parses 'EventType=topic,Other=topic2' into a routing map."""
    routes = {}
    for pair in raw.split(","):
        if not pair.strip():
            continue
        event_type, _, topic = pair.partition("=")
        if not topic.strip():
            raise ValueError(f"Invalid OUTBOX_TOPIC_ROUTES entry: {pair!r}")
        routes[event_type.strip()] = topic.strip()
    return routes


# Database Configuration
# Uses default credentials for local Docker Compose setup
DB_URL = os.getenv("DATABASE_URL", "postgres://user:password@db:5432/orders_db")

# Application Metadata
PROJECT_NAME = "Order Service"
VERSION = "1.0.0"

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Outbox Relay Configuration
RELAY_ENABLED = _env_bool("RELAY_ENABLED", True) # Run the relay inside the API process
POLLING_INTERVAL = float(os.getenv("POLLING_INTERVAL", 1.0)) # Seconds between polls when idle
MAX_RETRIES = int(os.getenv("MAX_RETRIES", 3)) # Failed publishes before a message is dead-lettered
BATCH_SIZE = int(os.getenv("BATCH_SIZE", 100)) # How many messages to fetch per poll
PUBLISH_TIMEOUT = float(os.getenv("PUBLISH_TIMEOUT", 10.0)) # Seconds before a publish counts as failed
RELAY_CONCURRENCY = int(os.getenv("RELAY_CONCURRENCY", 8)) # Partition groups published in parallel
RETRY_BACKOFF_BASE = float(os.getenv("RETRY_BACKOFF_BASE", 0)) # 0 disables backoff between retries
RETRY_BACKOFF_MAX = float(os.getenv("RETRY_BACKOFF_MAX", 300))
STORAGE_BACKOFF_MAX = float(os.getenv("STORAGE_BACKOFF_MAX", 60))
STORAGE_ALERT_THRESHOLD = int(os.getenv("STORAGE_ALERT_THRESHOLD", 5))
SHUTDOWN_TIMEOUT = float(os.getenv("SHUTDOWN_TIMEOUT", 30))

# Static sharding of partition keys across relay instances
RELAY_SHARD_INDEX = int(os.getenv("RELAY_SHARD_INDEX", 0))
RELAY_SHARD_COUNT = int(os.getenv("RELAY_SHARD_COUNT", 1))

# Moves expired, never-delivered messages to the ignored state
SWEEP_EXPIRED = _env_bool("SWEEP_EXPIRED", False)

# Topic routing
DEFAULT_TOPIC = os.getenv("OUTBOX_DEFAULT_TOPIC", "orders")
TOPIC_ROUTES = _parse_topic_routes(os.getenv("OUTBOX_TOPIC_ROUTES", ""))

# Broker transport: "inprocess" or "kafka-rest"
BROKER_BACKEND = os.getenv("BROKER_BACKEND", "inprocess")
KAFKA_REST_URL = os.getenv("KAFKA_REST_URL", "http://kafka-rest:8082")
KAFKA_CLUSTER_ID = os.getenv("KAFKA_CLUSTER_ID", "")

# Producer side: lifetime of order events, 0 means they never expire
ORDER_EVENT_TTL_SECONDS = int(os.getenv("ORDER_EVENT_TTL_SECONDS", 0))
