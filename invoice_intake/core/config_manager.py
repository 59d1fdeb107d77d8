"""
Configuration Manager

Handles loading and validating configuration from environment variables
(optionally seeded from a .env file).
"""

import os
import sys
import logging
from typing import Dict, Any, Optional
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = 'false') -> bool:
    return os.getenv(name, default).lower() == 'true'


class ConfigurationManager:
    """Manages application configuration loading and validation."""

    @staticmethod
    def load_configuration(env_file: Optional[str] = None) -> Dict[str, Any]:
        """Load configuration from environment variables and defaults."""
        if env_file:
            load_dotenv(env_file, override=False)

        config = {
            'database': {
                'path': os.getenv('INTAKE_DB_PATH', 'data/intake.db'),
            },
            'normalizer': {
                'max_pdf_pages': int(os.getenv('MAX_PDF_PAGES', '5')),
                'pdf_scale': float(os.getenv('PDF_SCALE', '3.0')),
                'min_long_edge': int(os.getenv('MIN_LONG_EDGE', '1000')),
                'max_long_edge': int(os.getenv('MAX_LONG_EDGE', '3500')),
                'max_upscale': float(os.getenv('MAX_UPSCALE', '3.5')),
                'pdf_timeout': int(os.getenv('PDF_TIMEOUT', '30')),
            },
            'ocr': {
                'engine_timeout': float(os.getenv('OCR_ENGINE_TIMEOUT', '10')),
                'tesseract_enabled': _env_bool('TESSERACT_ENABLED', 'true'),
                'tesseract_lang': os.getenv('TESSERACT_LANG', 'eng'),
                'psm_modes': [int(m) for m in os.getenv('TESSERACT_PSM_MODES', '1,6,4').split(',') if m.strip()],
                'min_confidence': float(os.getenv('OCR_MIN_CONFIDENCE', '0.5')),
                'pool_size': int(os.getenv('OCR_POOL_SIZE', '2')),
                'handle_max_uses': int(os.getenv('OCR_HANDLE_MAX_USES', '50')),
            },
            'azure_document_intelligence': {
                'enabled': _env_bool('AZURE_DOCUMENT_INTELLIGENCE_ENABLED'),
                'endpoint': os.getenv('AZURE_DOCUMENT_INTELLIGENCE_ENDPOINT'),
                'api_key': os.getenv('AZURE_DOCUMENT_INTELLIGENCE_KEY'),
                'model_id': os.getenv('AZURE_DOCUMENT_INTELLIGENCE_MODEL', 'prebuilt-read'),
            },
            'extraction': {
                'backend': os.getenv('EXTRACTION_BACKEND', 'template').lower(),
                'llm_model': os.getenv('EXTRACTION_LLM_MODEL', 'gpt-4o-mini'),
                'openai_api_key': os.getenv('OPENAI_API_KEY'),
                'schema_version': os.getenv('EXTRACTION_SCHEMA_VERSION', '1.0'),
            },
            'routing': {
                'auto_approve_threshold': float(os.getenv('AUTO_APPROVE_THRESHOLD', '0.95')),
                'review_threshold': float(os.getenv('REVIEW_THRESHOLD', '0.85')),
            },
            'vendors': {
                'similarity_threshold': float(os.getenv('VENDOR_SIMILARITY_THRESHOLD', '0.85')),
            },
            'intake': {
                'duplicate_window_hours': int(os.getenv('DUPLICATE_WINDOW_HOURS', '24')),
                'session_ttl_hours': int(os.getenv('SESSION_TTL_HOURS', '24')),
                'worker_count': int(os.getenv('INTAKE_WORKERS', '4')),
                'verify_token': os.getenv('WHATSAPP_VERIFY_TOKEN', ''),
                'whatsapp_token': os.getenv('WHATSAPP_ACCESS_TOKEN', ''),
                'graph_api_base': os.getenv('WHATSAPP_GRAPH_API_BASE', 'https://graph.facebook.com/v19.0'),
                'default_region': os.getenv('DEFAULT_PHONE_REGION', 'IN'),
            },
            'logging': {
                'level': os.getenv('LOG_LEVEL', 'INFO').upper(),
                'format': os.getenv('LOG_FORMAT', '%(asctime)s - %(name)s - %(levelname)s - %(message)s'),
                'file': os.getenv('LOG_FILE'),
            },
            'output': {
                'save_handoffs': _env_bool('SAVE_HANDOFFS'),
                'handoff_directory': os.getenv('HANDOFF_DIR', 'handoffs'),
            }
        }

        ConfigurationManager._validate_configuration(config)

        logger.info("✅ Configuration loaded successfully")
        return config

    @staticmethod
    def _validate_configuration(config: Dict[str, Any]):
        """Validate that required configuration is present and consistent."""
        errors = []

        normalizer = config['normalizer']
        if normalizer['pdf_scale'] < 3:
            errors.append("PDF_SCALE must be at least 3")
        if normalizer['max_pdf_pages'] < 1:
            errors.append("MAX_PDF_PAGES must be at least 1")
        if normalizer['min_long_edge'] >= normalizer['max_long_edge']:
            errors.append("MIN_LONG_EDGE must be smaller than MAX_LONG_EDGE")

        if config['ocr']['engine_timeout'] <= 0:
            errors.append("OCR_ENGINE_TIMEOUT must be positive")
        if not config['ocr']['tesseract_enabled'] and not config['azure_document_intelligence']['enabled']:
            errors.append("At least one recognition engine (Tesseract or Azure) must be enabled")

        if config['azure_document_intelligence']['enabled']:
            if not config['azure_document_intelligence']['endpoint']:
                errors.append(
                    "AZURE_DOCUMENT_INTELLIGENCE_ENDPOINT is required when Azure Document Intelligence is enabled")
            if not config['azure_document_intelligence']['api_key']:
                errors.append(
                    "AZURE_DOCUMENT_INTELLIGENCE_KEY is required when Azure Document Intelligence is enabled")

        extraction = config['extraction']
        if extraction['backend'] not in ('template', 'llm'):
            errors.append(f"EXTRACTION_BACKEND must be 'template' or 'llm', got '{extraction['backend']}'")
        elif extraction['backend'] == 'llm' and not extraction['openai_api_key']:
            errors.append("OPENAI_API_KEY is required when EXTRACTION_BACKEND is 'llm'")

        routing = config['routing']
        if not 0 < routing['review_threshold'] <= routing['auto_approve_threshold'] <= 1:
            errors.append("Thresholds must satisfy 0 < REVIEW_THRESHOLD <= AUTO_APPROVE_THRESHOLD <= 1")

        if not 0 < config['vendors']['similarity_threshold'] <= 1:
            errors.append("VENDOR_SIMILARITY_THRESHOLD must be in (0, 1]")

        if config['output']['save_handoffs']:
            handoff_dir = Path(config['output']['handoff_directory'])
            try:
                handoff_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create handoff directory {handoff_dir}: {e}")

        if errors:
            error_msg = "Configuration validation failed:\n" + \
                "\n".join(f"  - {error}" for error in errors)
            logger.error(error_msg)
            raise ValueError(error_msg)

    @staticmethod
    def setup_logging(config: Dict[str, Any]):
        """Setup logging configuration."""
        log_level = getattr(logging, config['logging']['level'], logging.INFO)
        log_format = config['logging']['format']

        handlers = [logging.StreamHandler()]
        if config['logging'].get('file'):
            handlers.append(logging.FileHandler(config['logging']['file']))

        logging.basicConfig(level=log_level, format=log_format, handlers=handlers, force=True)

        for noisy in ('azure', 'urllib3', 'httpx', 'PIL', 'openai'):
            logging.getLogger(noisy).setLevel(logging.WARNING)

        logger.info(f"Logging configured at {config['logging']['level']} level")

    @staticmethod
    def get_environment_info() -> Dict[str, Any]:
        """Get information about the current environment."""
        return {
            'python_version': sys.version,
            'platform': sys.platform,
            'working_directory': os.getcwd(),
            'environment_variables': {
                key: '***' if any(s in key.lower() for s in ('key', 'secret', 'token', 'password'))
                else value
                for key, value in os.environ.items()
                if key.startswith(('AZURE_', 'LOG_', 'OCR_', 'TESSERACT_', 'WHATSAPP_', 'EXTRACTION_',
                                   'INTAKE_', 'OPENAI_'))
            }
        }

    @staticmethod
    def create_sample_env_file(filepath: str = '.env.sample'):
        """Create a sample environment file with all configuration options."""
        sample_content = '''# Storage
INTAKE_DB_PATH=data/intake.db

# Media normalization
MAX_PDF_PAGES=5
PDF_SCALE=3.0
MIN_LONG_EDGE=1000
MAX_LONG_EDGE=3500
MAX_UPSCALE=3.5
PDF_TIMEOUT=30

# Recognition engines
OCR_ENGINE_TIMEOUT=10
TESSERACT_ENABLED=true
TESSERACT_LANG=eng
TESSERACT_PSM_MODES=1,6,4
OCR_MIN_CONFIDENCE=0.5
OCR_POOL_SIZE=2
OCR_HANDLE_MAX_USES=50

# Azure Document Intelligence (cloud fallback)
AZURE_DOCUMENT_INTELLIGENCE_ENABLED=false
AZURE_DOCUMENT_INTELLIGENCE_ENDPOINT=https://your-resource.cognitiveservices.azure.com/
AZURE_DOCUMENT_INTELLIGENCE_KEY=your_api_key
AZURE_DOCUMENT_INTELLIGENCE_MODEL=prebuilt-read

# Field extraction: template | llm
EXTRACTION_BACKEND=template
EXTRACTION_LLM_MODEL=gpt-4o-mini
OPENAI_API_KEY=

# Routing
AUTO_APPROVE_THRESHOLD=0.95
REVIEW_THRESHOLD=0.85
VENDOR_SIMILARITY_THRESHOLD=0.85

# Messaging intake
DUPLICATE_WINDOW_HOURS=24
SESSION_TTL_HOURS=24
INTAKE_WORKERS=4
WHATSAPP_VERIFY_TOKEN=change-me
WHATSAPP_ACCESS_TOKEN=
DEFAULT_PHONE_REGION=IN

# Logging
LOG_LEVEL=INFO
LOG_FORMAT=%(asctime)s - %(name)s - %(levelname)s - %(message)s
LOG_FILE=

# Output
SAVE_HANDOFFS=false
HANDOFF_DIR=handoffs
'''

        with open(filepath, 'w') as f:
            f.write(sample_content)

        logger.info(f"Sample environment file created: {filepath}")
