"""
Configuração de logging da API.

Cada subsistema usa seu próprio logger sob o namespace estoque_api
(estoque_api.ledger, estoque_api.fulfillment, ...). Eventos de negócio são
registrados com o nome do evento na mensagem e o contexto em extra=.
"""

import logging
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

ROOT_LOGGER = "estoque_api"


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel((level or "INFO").upper())

    # Evita handlers duplicados quando o app é recarregado
    if not any(getattr(h, "_estoque_api", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
        handler._estoque_api = True
        logger.addHandler(handler)

    return logger
