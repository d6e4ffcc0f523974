import yaml
import logging
from typing import List, Optional, Dict, Any
from pathlib import Path
from pydantic import BaseModel, Field

from code_index.core.utils import DEFAULT_WATCH_PATTERNS

# Default configuration values
DEFAULT_CONFIG_PATH = "codeindex.config.yaml"
DEFAULT_STATE_DIR = ".codeindex"
DEFAULT_PROJECT_ROOT = None
DEFAULT_EMBEDDING_PROVIDER = "sentence-transformers"
DEFAULT_EMBEDDING_MODEL = "all-MiniLM-L6-v2"
DEFAULT_INDEX_NAME = "code"
DEFAULT_CONCURRENCY = 4
DEFAULT_DEBOUNCE_SECONDS = 2.0
DEFAULT_SAVE_DEBOUNCE_SECONDS = 5.0
DEFAULT_SEARCH_MIN_SIMILARITY = 0.7
DEFAULT_SIMILAR_CODE_MIN_SIMILARITY = 0.8
DEFAULT_IMPACT_MAX_DEPTH = 5

EMBEDDING_MODEL_SHORTCUTS = {
    "fast": "all-MiniLM-L6-v2",      # 384 dimensions, fastest
    "medium": "all-MiniLM-L12-v2",   # 384 dimensions, balanced
    "accurate": "all-mpnet-base-v2",  # 768 dimensions, most accurate
}


def resolve_embedding_model(model_name: str) -> str:
    """Resolve 'fast' / 'medium' / 'accurate' to a SentenceTransformer model name."""
    return EMBEDDING_MODEL_SHORTCUTS.get(model_name.lower(), model_name)


class IndexerConfig(BaseModel):
    """
    Central configuration model for the code index.
    """
    project_root: Optional[str] = Field(default=DEFAULT_PROJECT_ROOT)
    watch_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_WATCH_PATTERNS))
    ignored_patterns: List[str] = Field(default_factory=list)

    embedding_provider: str = Field(default=DEFAULT_EMBEDDING_PROVIDER)
    embedding_model: str = Field(default=DEFAULT_EMBEDDING_MODEL)
    index_name: str = Field(default=DEFAULT_INDEX_NAME)

    concurrency: int = Field(default=DEFAULT_CONCURRENCY, ge=1)
    debounce_seconds: float = Field(default=DEFAULT_DEBOUNCE_SECONDS, ge=0)
    save_debounce_seconds: float = Field(default=DEFAULT_SAVE_DEBOUNCE_SECONDS, ge=0)

    search_min_similarity: float = Field(default=DEFAULT_SEARCH_MIN_SIMILARITY)
    similar_code_min_similarity: float = Field(default=DEFAULT_SIMILAR_CODE_MIN_SIMILARITY)
    impact_max_depth: int = Field(default=DEFAULT_IMPACT_MAX_DEPTH, ge=1)

    watch_enabled: bool = True

    # Optional LLM config for element descriptions
    summary_generation_enabled: bool = False
    llm_config: Dict[str, Any] = Field(default_factory=dict)

    # Allow extra fields for flexibility
    class Config:
        extra = "allow"

    def require_project_root(self) -> Path:
        if not self.project_root:
            raise ValueError("project_root must be set in config to resolve .codeindex paths")
        return Path(self.project_root).resolve()

    def state_dir(self) -> Path:
        return self.require_project_root() / DEFAULT_STATE_DIR

    def vectors_dir(self) -> Path:
        return self.state_dir() / "vectors"

    def dependencies_dir(self) -> Path:
        return self.state_dir() / "dependencies"

    def file_tracker_path(self) -> Path:
        return self.state_dir() / "file-tracker.json"

    def vectorization_state_path(self) -> Path:
        return self.state_dir() / "vectorization-state.json"


def load_config(
    config_path: Optional[str] = None,
    cli_args: Optional[Dict[str, Any]] = None
) -> IndexerConfig:
    """
    Load configuration from file and overrides.

    Priority:
    1. CLI Arguments (if provided and not None)
    2. Config File (if provided or found at default path)
    3. Default Values

    Args:
        config_path: Path to the YAML config file. If None, tries 'codeindex.config.yaml'.
        cli_args: Dictionary of CLI arguments to override config values.

    Returns:
        IndexerConfig: The resolved configuration object.
    """
    config_data: Dict[str, Any] = {}

    target_path = config_path if config_path else DEFAULT_CONFIG_PATH
    path_obj = Path(target_path)

    if path_obj.exists() and path_obj.is_file():
        try:
            with open(path_obj, 'r', encoding='utf-8') as f:
                file_data = yaml.safe_load(f)
                if file_data:
                    config_data.update(file_data)
            logging.info(f"Loaded configuration from {target_path}")
        except (OSError, yaml.YAMLError) as e:
            logging.warning(f"Failed to load config file {target_path}: {e}")
    elif config_path:
        logging.warning(f"Config file not found at explicit path: {config_path}")
    else:
        logging.info(f"No config file found at {DEFAULT_CONFIG_PATH}, using defaults.")

    if cli_args:
        for key, value in cli_args.items():
            if value is not None:
                config_data[key] = value

    if config_data.get("embedding_model"):
        config_data["embedding_model"] = resolve_embedding_model(config_data["embedding_model"])

    return IndexerConfig(**config_data)
