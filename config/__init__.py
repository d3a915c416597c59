# Config package for the marketing-materials estoque API
# This file makes the config directory a Python package

import os
from pathlib import Path
from dotenv import load_dotenv

# Sempre carregar o .env da raiz do projeto
PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=PROJECT_ROOT / '.env')


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    ENV = 'development'

    # Banco de dados MongoDB
    MONGO_URI = os.environ.get('MONGO_URI') or 'mongodb://localhost:27017'
    MONGO_DB = os.environ.get('MONGO_DB') or 'estoque_marketing'
    MONGO_TIMEOUT_MS = int(os.environ.get('MONGO_TIMEOUT_MS') or 5000)

    # Fallback para mongomock quando o Mongo não responde
    ALLOW_MOCK_DB = _env_bool('ALLOW_MOCK_DB', True)

    # Paginação
    ITEMS_PER_PAGE = 20
    MAX_PER_PAGE = 100

    # Logging
    LOG_LEVEL = (os.environ.get('LOG_LEVEL') or 'INFO').upper()

    # CORS
    CORS_ALLOW_ORIGINS = (os.environ.get('CORS_ALLOW_ORIGINS') or '').strip()
    CORS_ALLOW_ORIGIN_REGEX = os.environ.get(
        'CORS_ALLOW_ORIGIN_REGEX',
        r'http://(localhost|127\.0\.0\.1)(:\d+)?',
    )


class DevelopmentConfig(Config):
    DEBUG = True
    LOG_LEVEL = (os.environ.get('LOG_LEVEL') or 'DEBUG').upper()


class ProductionConfig(Config):
    ENV = 'production'
    DEBUG = False

    # Em produção o banco em memória nunca é aceito
    ALLOW_MOCK_DB = False


class TestingConfig(Config):
    ENV = 'testing'
    TESTING = True
    MONGO_DB = 'estoque_marketing_test'


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}


def get_config():
    env = (os.environ.get('ENV') or 'default').strip().lower()
    return config.get(env, config['default'])
