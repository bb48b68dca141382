import os


class AppConfig:
    # Redis backs the job records and the work queue
    redis_url = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
    redis_max_connections = int(os.environ.get("REDIS_MAX_CONNECTIONS", 50))
    redis_reconnect_attempts = int(os.environ.get("REDIS_RECONNECT_ATTEMPTS", 10))

    # Worker
    max_workers = int(os.environ.get("MAX_WORKERS", 5))

    # Submission limits
    max_brands = int(os.environ.get("MAX_BRANDS", 5))
    max_ads_per_brand = int(os.environ.get("MAX_ADS_PER_BRAND", 100))

    # Apify
    apify_api_token = os.environ.get("APIFY_API_TOKEN", "")
    apify_actor_id = os.environ.get("APIFY_ACTOR_ID", "XtaWFhbtfxyzqrFmd")

    # Supabase
    supabase_url = os.environ.get("SUPABASE_URL", "")
    supabase_key = os.environ.get("SUPABASE_KEY", "")

    # OpenAI
    openai_api_key = os.environ.get("OPENAI_API_KEY", "")
    openai_model = os.environ.get("OPENAI_MODEL", "gpt-4o-mini")

    # Local output
    data_dir = os.environ.get("DATA_DIR", os.path.join(os.getcwd(), "data"))
    log_dir = os.environ.get("LOG_DIR", os.path.join(os.getcwd(), "logs"))
    log_level = os.environ.get("LOG_LEVEL", "INFO")

    @property
    def has_apify(self) -> bool:
        return bool(self.apify_api_token)

    @property
    def has_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    @property
    def has_openai(self) -> bool:
        return bool(self.openai_api_key)


settings = AppConfig()
