"""Application configuration for the JSON translation service."""
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from openai import AsyncOpenAI

from json_translator.completion import CompletionService, DryRunCompletionService, OpenAICompletionService
from json_translator.errors import ConfigError
from json_translator.languages import Language, build_language_table
from json_translator.logging_config import setup_logger
from json_translator.pipeline import TranslationOptions


@dataclass
class AppConfig:
    """Application configuration dataclass."""
    # Core paths
    project_root: str
    input_folder: str
    terminology_dir: str

    # Languages
    source_language: str
    target_languages: List[str]
    languages: Dict[str, Language]

    # Model configuration
    model_name: str
    review_model_name: str
    max_model_tokens: int
    request_timeout: float

    # Processing settings
    dry_run: bool
    incremental: bool
    batch_size: int
    max_concurrent_api_calls: int
    max_retries: int
    retry_base_delay: float
    include_patterns: List[str] = field(default_factory=list)
    exclude_patterns: List[str] = field(default_factory=list)
    skip_terminology_detection: bool = False

    # OpenAI client
    openai_client: Optional[AsyncOpenAI] = None


def _compute_project_root() -> str:
    """Compute the project root directory."""
    script_dir = os.path.dirname(os.path.realpath(__file__))
    return os.path.abspath(os.path.join(script_dir, os.pardir))


def _dotenv_candidates(project_root: str) -> List[str]:
    return [os.path.join(project_root, '.env'), os.path.join(project_root, 'docker', '.env')]


def _load_dotenv_files(project_root: str) -> None:
    """Load the first .env file found in the project root or docker directory."""
    for dotenv_path in _dotenv_candidates(project_root):
        if os.path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            return


def _load_yaml_config(project_root: str) -> Dict[str, Any]:
    """Load the YAML configuration file named by TRANSLATOR_CONFIG_FILE, or config.yaml in the project root."""
    default_config_path = os.path.join(project_root, 'config.yaml')
    config_file = os.path.abspath(os.environ.get('TRANSLATOR_CONFIG_FILE', default_config_path))

    # The logger is configured from this file, so problems go to stderr.
    config: Dict[str, Any] = {}
    if not os.path.exists(config_file):
        print(f"Warning: Configuration file '{config_file}' not found. Using default configuration.",
              file=sys.stderr)
        print(f"Tip: Create a config.yaml file in '{project_root}' or set TRANSLATOR_CONFIG_FILE environment variable.",
              file=sys.stderr)
        return config

    try:
        with open(config_file, 'r', encoding='utf-8') as config_file_stream:
            loaded_config = yaml.safe_load(config_file_stream)
    except yaml.YAMLError as e:
        print(f"Error: Invalid YAML in configuration file '{config_file}': {e}", file=sys.stderr)
        print("Please check your YAML syntax. Using default configuration.", file=sys.stderr)
        return config
    except OSError as e:
        print(f"Error: Could not read configuration file '{config_file}': {e}", file=sys.stderr)
        print("Using default configuration.", file=sys.stderr)
        return config

    if loaded_config is None:
        print(f"Warning: Configuration file '{config_file}' is empty. Using default configuration.",
              file=sys.stderr)
    elif isinstance(loaded_config, dict):
        config = loaded_config
        print(f"Successfully loaded configuration from: {config_file}", file=sys.stderr)
    else:
        print(f"Error: Configuration file '{config_file}' must contain a YAML dictionary. Using defaults.",
              file=sys.stderr)
    return config


def _setup_logger_from_config(config: Dict[str, Any]) -> logging.Logger:
    log_config = config.get('logging', {}) or {}
    return setup_logger(
        log_config.get('log_level', 'INFO').upper(),
        log_config.get('log_file_path', 'logs/translation_log.log'),
        log_config.get('log_to_console', True)
    )


def _log_dotenv_status(logger: logging.Logger, project_root: str) -> None:
    for dotenv_path in _dotenv_candidates(project_root):
        if os.path.exists(dotenv_path):
            logger.info("Loaded environment variables from: %s", dotenv_path)
            return
    logger.info("No .env file found in '%s' or its docker/ directory. Relying on system environment variables if any.",
                project_root)


def _int_setting(config: Dict[str, Any], key: str, env_var: str, default: int) -> int:
    raw_value = os.environ.get(env_var, config.get(key, default))
    try:
        value = int(raw_value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"'{key}' must be an integer, got {raw_value!r}", cause=exc, key=key) from exc
    if value <= 0:
        raise ConfigError(f"'{key}' must be positive, got {value}", key=key)
    return value


def _as_pattern_list(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(pattern) for pattern in value]


def _create_openai_client(dry_run: bool, logger: logging.Logger) -> Optional[AsyncOpenAI]:
    """Create the OpenAI client unless running in dry-run mode."""
    if dry_run:
        logger.info("Running in dry-run mode, OpenAI client will not be initialized")
        return None

    api_key_from_env = os.environ.get('OPENAI_API_KEY')
    if not api_key_from_env:
        logger.critical("CRITICAL: OPENAI_API_KEY environment variable not found.")
        logger.critical("Please set OPENAI_API_KEY or enable dry_run mode in configuration.")
        sys.exit(1)

    if not api_key_from_env.startswith('sk-'):
        logger.warning("Warning: OPENAI_API_KEY does not start with 'sk-'. This may be invalid.")

    client = AsyncOpenAI(api_key=api_key_from_env)
    logger.info("OpenAI client initialized successfully")
    return client


def load_app_config() -> AppConfig:
    """
    Load application configuration from YAML file and environment variables.

    Returns:
        AppConfig: The loaded application configuration.

    Raises:
        ConfigError: If a numeric setting is not a positive integer.
    """
    project_root = _compute_project_root()
    _load_dotenv_files(project_root)
    config = _load_yaml_config(project_root)
    logger = _setup_logger_from_config(config)
    _log_dotenv_status(logger, project_root)

    dry_run = bool(config.get('dry_run', False))
    model_name = os.environ.get('MODEL_NAME', config.get('model_name', 'gpt-4o-mini'))
    review_model_name = os.environ.get('REVIEW_MODEL_NAME', config.get('review_model_name', model_name))

    return AppConfig(
        project_root=project_root,
        input_folder=config.get('input_folder', os.path.join(project_root, 'locales')),
        terminology_dir=config.get('terminology_dir', os.path.join(project_root, '.terminology')),
        source_language=config.get('source_language', 'en'),
        target_languages=list(config.get('target_languages', [])),
        languages=build_language_table(config.get('supported_locales', [])),
        model_name=model_name,
        review_model_name=review_model_name,
        max_model_tokens=config.get('max_model_tokens', 4096),
        request_timeout=float(config.get('request_timeout', 60.0)),
        dry_run=dry_run,
        incremental=bool(config.get('incremental', True)),
        batch_size=_int_setting(config, 'batch_size', 'TRANSLATION_BATCH_SIZE', 20),
        max_concurrent_api_calls=_int_setting(config, 'max_concurrent_api_calls', 'MAX_CONCURRENT_API_CALLS', 3),
        max_retries=_int_setting(config, 'max_retries', 'TRANSLATION_MAX_RETRIES', 3),
        retry_base_delay=float(config.get('retry_base_delay', 1.0)),
        include_patterns=_as_pattern_list(config.get('include_keys')),
        exclude_patterns=_as_pattern_list(config.get('exclude_keys')),
        skip_terminology_detection=bool(config.get('skip_terminology_detection', False)),
        openai_client=_create_openai_client(dry_run, logger),
    )


def create_completion_service(app_config: AppConfig, review: bool = False) -> CompletionService:
    """Build the completion service for translation, or for review when ``review`` is set."""
    if app_config.dry_run or app_config.openai_client is None:
        return DryRunCompletionService()
    model_name = app_config.review_model_name if review else app_config.model_name
    return OpenAICompletionService(app_config.openai_client, model_name, timeout=app_config.request_timeout)


def build_translation_options(app_config: AppConfig, **overrides: Any) -> TranslationOptions:
    options = TranslationOptions(
        batch_size=app_config.batch_size,
        concurrency=app_config.max_concurrent_api_calls,
        max_retries=app_config.max_retries,
        retry_base_delay=app_config.retry_base_delay,
        include_patterns=list(app_config.include_patterns),
        exclude_patterns=list(app_config.exclude_patterns),
        skip_terminology_detection=app_config.skip_terminology_detection,
    )
    for name, value in overrides.items():
        if not hasattr(options, name):
            raise ConfigError(f"unknown translation option '{name}'", option=name)
        setattr(options, name, value)
    return options
