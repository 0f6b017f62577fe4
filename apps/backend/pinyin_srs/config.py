from typing import Annotated

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources.types import NoDecode


DEFAULT_DB_PATH = ".data/srs.sqlite3"


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    環境変数から読み込まれるアプリ設定クラス。
    - environment: 実行環境（development/staging/production など）
    - queue_*: 復習キューの件数上限とキャッシュ寿命
    - store_*: 永続層呼び出しのタイムアウト/リトライ
    """

    environment: str = Field(
        default="development",
        description="Runtime environment / 実行環境",
    )

    # --- SRS（復習）の永続化設定 ---
    srs_db_path: str = Field(
        default=DEFAULT_DB_PATH,
        description="Path to SRS SQLite database / SRS用SQLite DBパス",
    )

    # --- 復習キュー ---
    queue_default_limit: int = Field(
        default=50,
        description="Default number of due items per queue read / キュー取得の既定件数",
    )
    queue_max_limit: int = Field(
        default=100,
        description="Upper bound applied to requested queue limits / キュー件数の上限（超過分は丸める）",
    )
    queue_cache_ttl_seconds: float = Field(
        default=60.0,
        description="TTL of cached review queues (s) / 復習キューキャッシュの寿命(秒)",
    )
    stats_cache_ttl_seconds: float = Field(
        default=300.0,
        description="TTL of cached daily stats (s) / 日次統計キャッシュの寿命(秒)",
    )
    cache_max_workers: int = Field(
        default=4,
        description="Worker threads for cache loads and background refresh / キャッシュ読込用スレッド数",
    )

    # --- 永続層呼出しのタイムアウト/リトライ ---
    store_timeout_ms: int = Field(
        default=3000,
        description="Timeout for synchronous queue loads (ms) / キュー同期読込のタイムアウト(ms)",
    )
    store_read_max_retries: int = Field(
        default=2,
        description="Max attempts for store reads / 読み込み系ストア呼出しの最大試行回数",
    )
    store_read_backoff_ms: int = Field(
        default=100,
        description="Linear backoff step between read attempts (ms) / 読み込みリトライ間隔の増分(ms)",
    )

    # 日付境界（streak/日次統計）の解釈に使う既定タイムゾーン
    default_timezone: str = Field(
        default="UTC",
        description="Timezone used when the caller does not send one / 呼び出し側が未指定の場合のタイムゾーン",
    )

    allowed_cors_origins: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(),
        description=(
            "Comma separated CORS origins / CORS で許可するオリジンのカンマ区切り一覧"
        ),
        validation_alias=AliasChoices("allowed_cors_origins", "cors_allowed_origins"),
    )

    # Pydantic v2 settings config
    # - env_file: .env を読み込む
    # - extra: .env に存在する未使用キーを無視
    # - case_sensitive: 環境変数キーの大小文字を区別しない
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    @field_validator("allowed_cors_origins", mode="before")
    @classmethod
    def _normalise_allowed_cors_origins(
        cls, raw_origins: object
    ) -> tuple[str, ...] | object:  # pragma: no cover - pydantic handles typing
        """Convert environment input into a deduplicated tuple of origins.

        なぜ: CORS 設定を `.env` で管理するときに空白や重複が混ざりやすいため、
        FastAPI へ渡す前にトリムと重複排除を行って安全な配列へ正規化する。
        """

        if raw_origins is None:
            candidates: list[str] = []
        elif isinstance(raw_origins, str):
            candidates = raw_origins.split(",")
        else:
            try:
                candidates = list(raw_origins)
            except TypeError:
                return raw_origins

        normalised: list[str] = []
        seen: set[str] = set()
        for candidate in candidates:
            if not isinstance(candidate, str):
                continue
            trimmed = candidate.strip()
            if not trimmed or trimmed in seen:
                continue
            seen.add(trimmed)
            normalised.append(trimmed)

        return tuple(normalised)

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        """Reject limit/TTL combinations the queue cache cannot honour.

        なぜ: 上限が既定値より小さい、または TTL が 0 以下だと stale 判定
        (TTL の半分) が成立しないため、起動時点で検出して止める。
        """

        if self.queue_max_limit < 1:
            raise ValueError("QUEUE_MAX_LIMIT must be >= 1")
        if not 1 <= self.queue_default_limit <= self.queue_max_limit:
            raise ValueError("QUEUE_DEFAULT_LIMIT must be between 1 and QUEUE_MAX_LIMIT")
        if self.queue_cache_ttl_seconds <= 0 or self.stats_cache_ttl_seconds <= 0:
            raise ValueError("cache TTLs must be positive")
        if self.store_read_max_retries < 1:
            raise ValueError("STORE_READ_MAX_RETRIES must be >= 1")
        return self


settings = Settings()
