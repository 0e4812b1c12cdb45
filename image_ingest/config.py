from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "image-ingest-service"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "info"

    images_dir: str = "images"
    small_images_dir: str = "small_images"
    derivative_size: int = 100
    unique_names: bool = False
    upload_chunk_size: int = 64 * 1024
    max_upload_files: int = 1000

    fetch_timeout: float = 30.0
    max_fetch_bytes: int = 10 * 1024 * 1024
    fetch_block_private_hosts: bool = False

    request_timeout: float = 120.0
    graceful_shutdown_timeout: int | None = None


settings = Settings()
