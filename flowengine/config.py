"""Configuration management for the workflow execution engine."""

import os
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field, field_validator
from enum import Enum

from .models.core import BackoffStrategy, RunOptions


ENV_PREFIX = "FLOWENGINE_"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class EngineConfig(BaseModel):
    """Application and engine configuration settings."""

    # Application settings
    app_name: str = Field(default="Flow Engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Execution defaults
    parallel: bool = Field(default=False, description="Run sibling nodes concurrently by default")
    max_parallelism: int = Field(default=10, description="Maximum concurrent node executions per run")
    max_concurrent_runs: int = Field(default=100, description="Maximum number of active runs")
    default_max_retries: int = Field(default=0, description="Default retry budget per node")
    backoff_strategy: BackoffStrategy = Field(default=BackoffStrategy.FIXED, description="Default backoff strategy")
    base_delay: float = Field(default=1.0, description="Default retry base delay in seconds")
    max_delay: float = Field(default=30.0, description="Maximum retry delay in seconds")
    node_timeout: Optional[float] = Field(default=None, description="Default node timeout in seconds")
    executor_threads: int = Field(default=4, description="Thread pool size for synchronous executors")

    # Monitoring settings
    monitor_history_limit: int = Field(default=100, description="Records kept per workflow by the monitor")

    # WebSocket settings
    websocket_max_connections: int = Field(default=100, description="Maximum WebSocket connections")

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: Optional[str] = Field(default=None, description="Log message format")
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")
    structured_logging: bool = Field(default=False, description="Emit JSON log records")

    # Performance monitoring settings
    slow_request_threshold: float = Field(default=5.0, description="Slow request threshold in seconds")
    enable_performance_monitoring: bool = Field(
        default=True,
        description="Enable performance monitoring middleware"
    )

    # Security settings
    cors_origins: List[str] = Field(default=["*"], description="CORS allowed origins")
    cors_methods: List[str] = Field(default=["GET", "POST", "PUT", "DELETE"], description="CORS allowed methods")

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        """Validate port number."""
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('max_parallelism', 'max_concurrent_runs', 'executor_threads', 'monitor_history_limit')
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator('default_max_retries')
    @classmethod
    def validate_retries(cls, v):
        if v < 0:
            raise ValueError("Retry budget cannot be negative")
        return v

    @field_validator('base_delay', 'max_delay')
    @classmethod
    def validate_delays(cls, v):
        if v < 0:
            raise ValueError("Delays cannot be negative")
        return v

    @field_validator('node_timeout')
    @classmethod
    def validate_node_timeout(cls, v):
        """Validate timeout values."""
        if v is not None and v <= 0:
            raise ValueError("Node timeout must be positive")
        return v

    def to_run_options(self) -> RunOptions:
        """Default run options derived from this configuration."""
        return RunOptions(
            parallel=self.parallel,
            max_parallelism=self.max_parallelism,
            default_max_retries=self.default_max_retries,
            backoff_strategy=self.backoff_strategy,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            node_timeout=self.node_timeout,
        )

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Get Uvicorn server configuration."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls) -> 'EngineConfig':
        """Create configuration from FLOWENGINE_* environment variables."""
        def get_env(key: str, default=None, type_func=str):
            """Get environment variable with type conversion."""
            value = os.getenv(f"{ENV_PREFIX}{key}")
            if value is None or value == "":
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            elif type_func == list:
                return [item.strip() for item in value.split(',') if item.strip()]
            return type_func(value)

        return cls(
            app_name=get_env("APP_NAME", "Flow Engine"),
            app_version=get_env("APP_VERSION", "1.0.0"),
            debug=get_env("DEBUG", False, bool),
            host=get_env("HOST", "0.0.0.0"),
            port=get_env("PORT", 8000, int),
            reload=get_env("RELOAD", False, bool),
            parallel=get_env("PARALLEL", False, bool),
            max_parallelism=get_env("MAX_PARALLELISM", 10, int),
            max_concurrent_runs=get_env("MAX_CONCURRENT_RUNS", 100, int),
            default_max_retries=get_env("DEFAULT_MAX_RETRIES", 0, int),
            backoff_strategy=BackoffStrategy(get_env("BACKOFF_STRATEGY", "fixed").lower()),
            base_delay=get_env("BASE_DELAY", 1.0, float),
            max_delay=get_env("MAX_DELAY", 30.0, float),
            node_timeout=get_env("NODE_TIMEOUT", None, float),
            executor_threads=get_env("EXECUTOR_THREADS", 4, int),
            monitor_history_limit=get_env("MONITOR_HISTORY_LIMIT", 100, int),
            websocket_max_connections=get_env("WEBSOCKET_MAX_CONNECTIONS", 100, int),
            log_level=LogLevel(get_env("LOG_LEVEL", "INFO").upper()),
            log_format=get_env("LOG_FORMAT", None),
            log_file=get_env("LOG_FILE", None),
            log_max_size=get_env("LOG_MAX_SIZE", 10485760, int),
            log_backup_count=get_env("LOG_BACKUP_COUNT", 5, int),
            structured_logging=get_env("STRUCTURED_LOGGING", False, bool),
            slow_request_threshold=get_env("SLOW_REQUEST_THRESHOLD", 5.0, float),
            enable_performance_monitoring=get_env("ENABLE_PERFORMANCE_MONITORING", True, bool),
            cors_origins=get_env("CORS_ORIGINS", ["*"], list),
            cors_methods=get_env("CORS_METHODS", ["GET", "POST", "PUT", "DELETE"], list),
        )


# Global configuration instance
_config: Optional[EngineConfig] = None


def get_config() -> EngineConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = EngineConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> EngineConfig:
    """Load configuration from a .env file and the environment."""
    global _config
    from dotenv import load_dotenv

    if config_file and os.path.exists(config_file):
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        load_dotenv('.env')

    _config = EngineConfig.from_env()
    return _config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


def validate_config(config: EngineConfig) -> None:
    """
    Check settings that pydantic field validation cannot.

    Raises:
        ConfigurationError: If the configuration is unusable
    """
    from .core.exceptions import ConfigurationError

    errors = []

    if config.max_delay < config.base_delay:
        errors.append("max_delay must not be smaller than base_delay")

    if config.log_file:
        log_dir = os.path.dirname(config.log_file)
        if log_dir and not os.path.exists(log_dir):
            try:
                os.makedirs(log_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create log directory {log_dir}: {e}")

    if config.websocket_max_connections > 1000:
        errors.append("WebSocket connection limit above 1000 is not supported")

    if errors:
        raise ConfigurationError(f"Configuration validation failed: {'; '.join(errors)}")


# Environment-specific configurations
def get_development_config() -> EngineConfig:
    """Get development configuration."""
    return EngineConfig(
        debug=True,
        reload=True,
        log_level=LogLevel.DEBUG,
        enable_performance_monitoring=True
    )


def get_production_config() -> EngineConfig:
    """Get production configuration."""
    return EngineConfig(
        debug=False,
        reload=False,
        log_level=LogLevel.INFO,
        structured_logging=True,
        enable_performance_monitoring=True,
        cors_origins=[]
    )


def get_testing_config() -> EngineConfig:
    """Get testing configuration."""
    return EngineConfig(
        debug=True,
        log_level=LogLevel.WARNING,
        base_delay=0.0,
        max_delay=0.0,
        max_concurrent_runs=10,
        monitor_history_limit=20,
    )
