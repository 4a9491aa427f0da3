from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    mbta_base_url: str = "https://api-v3.mbta.com"
    poll_interval_seconds: int = 300
    route_types: str = "0,1"
    use_streams: bool = True
    stream_retry_seconds: int = 5
    feeds: str = "routes,stops,trips,alerts,vehicles,predictions"
    connection_queue_size: int = 1000
    dedupe_stop_names: bool = True
    log_level: str = "INFO"

    model_config = {"env_prefix": "", "case_sensitive": False}

    @property
    def feed_names(self) -> list[str]:
        return [f.strip() for f in self.feeds.split(",") if f.strip()]


settings = Settings()
