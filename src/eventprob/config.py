from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="EP_",
    )

    # Monte Carlo simulation
    simulation_num_scenarios: int = 10000
    simulation_horizon_months: int = 12

    # Parallelization
    simulation_batch_size: int = 2500  # scenarios per worker batch
    simulation_max_workers: int = 4

    # Logging
    log_level: str = "INFO"
    log_dir: str = "logs"
