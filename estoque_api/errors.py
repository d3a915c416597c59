"""
Exceções do domínio de estoque e solicitações.

Todas herdam de EstoqueError, que carrega um código estável para tratamento
programático, a mensagem legível e o status HTTP usado pela API.

    try:
        await ledger.registrar_movimento("saida", produto_id, 10, usuario, origem_id=loja)
    except InsufficientStock as e:
        print(f"Só tem {e.data['disponivel']} disponível")
"""

from typing import Any, Dict, Optional


class EstoqueError(Exception):
    code = "ESTOQUE_ERROR"
    status_code = 400
    default_message = "Erro na operação de estoque"

    def __init__(self, message: Optional[str] = None, **data: Any):
        self.message = message or self.default_message
        self.data: Dict[str, Any] = data
        super().__init__(self.message)

    def as_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code, "data": self.data}


class DadosInvalidos(EstoqueError):
    code = "INVALID_DATA"
    status_code = 400
    default_message = "Dados inválidos"


class InvalidTransition(EstoqueError):
    code = "INVALID_TRANSITION"
    status_code = 400
    default_message = "Transição de status inválida"


class Forbidden(EstoqueError):
    code = "FORBIDDEN"
    status_code = 403
    default_message = "Acesso negado"


class NotFound(EstoqueError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Registro não encontrado"


class InsufficientStock(EstoqueError):
    code = "INSUFFICIENT_STOCK"
    status_code = 400
    default_message = "Saldo insuficiente"

    @property
    def disponivel(self) -> float:
        return float(self.data.get("disponivel", 0))


class ConfigurationError(EstoqueError):
    """Local de estoque obrigatório ausente (central ou estoque da loja)."""

    code = "CONFIGURATION_ERROR"
    status_code = 500
    default_message = "Configuração de estoque incompleta"


class PostingFailure(EstoqueError):
    """Falha ao lançar a movimentação de um item. Apenas registrada em log."""

    code = "POSTING_FAILURE"
    status_code = 500
    default_message = "Falha ao registrar movimentação"
