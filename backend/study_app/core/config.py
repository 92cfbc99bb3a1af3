from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional


class Settings(BaseSettings):
    """
    应用程序配置设置类，从环境变量或.env文件加载所有配置项。
    使用Pydantic进行数据验证和类型检查。

    包含服务器配置、令牌密钥、模型设置、应用数据库与数据集数据库连接、
    Agent运行时地址等配置项。在应用启动时会自动验证必需的配置项是否存在。
    """
    # Server
    BACKEND_PORT: int = 8000
    AGENT_PORT: int = 8123

    # Signing secret for study bearer tokens and management session cookies
    AUTH_SECRET: str
    STUDY_TOKEN_TTL_SECONDS: int = 2 * 60 * 60
    MANAGEMENT_SESSION_COOKIE: str = "management_session"

    # OpenAI (for chat completions with tool calling)
    STUDY_OPENAI_API_KEY: str
    STUDY_OPENAI_MODEL: str = "gpt-4o-mini"
    STUDY_OPENAI_API_BASE: str = "https://api.openai.com/v1"

    # Model configuration tells Pydantic where to find the .env file.
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding='utf-8',
        extra='ignore',
        case_sensitive=True
    )

    PROJECT_NAME: str = "Data-Aware Study Platform"
    API_STUDY_STR: str = "/api/study"
    API_AGENT_PROXY_STR: str = "/api/langgraph"

    BACKEND_CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:3001"]

    # Application database (participants, ledger, surveys, audit rows)
    DATABASE_URL: str = "sqlite:///./study.db"

    # Dataset database (read-only analytical queries issued by the agent)
    DATASET_DATABASE_URL: str = "sqlite:///./dataset.db"
    DATASET_POOL_SIZE: int = 5
    DATASET_SQL_MAX_ROWS: int = 500
    DATASET_SQL_STATEMENT_TIMEOUT_MS: int = 8000
    SCHEMA_SUMMARY_MAX_TABLES: int = 80
    SCHEMA_SUMMARY_MAX_COLUMNS: int = 40

    # Participant activity
    INACTIVITY_CLOSE_SECONDS: int = 300

    # Ledger retry policy
    THREAD_LOOKUP_ATTEMPTS: int = 10
    THREAD_LOOKUP_DELAY_MS: int = 25
    MESSAGE_INSERT_ATTEMPTS: int = 5

    # LLM Settings
    LLM_MAX_TOKENS: int = 4096
    LLM_TEMPERATURE: float = 0.0
    AGENT_MAX_TOOL_ROUNDS: int = 25
    DQ_MAX_SQL_CALLS: int = 5
    # Overrides the built-in main assistant prompt template when set
    AGENT_SYSTEM_PROMPT_TEMPLATE: Optional[str] = None

    # Agent runtime behind the reverse proxy
    AGENT_API_URL: str = "http://localhost:8123"
    AGENT_CORS_ALLOWED_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:3001"]
    AGENT_PROXY_TIMEOUT_SECONDS: float = 300.0
    # Agent线程检查点的SQLite文件；未设置时检查点只保存在进程内存中
    AGENT_CHECKPOINT_SQLITE_PATH: Optional[str] = None


# Create a single, globally accessible instance of the settings.
# This will raise a validation error on startup if required settings are missing.
settings = Settings()
