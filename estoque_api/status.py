"""
Ciclo de vida da solicitação.

A tabela STATUS_FLOW é a única fonte das transições permitidas; a checagem de
legalidade é uma consulta nela. aplicado e cancelado são terminais.
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional


class StatusSolicitacao(str, Enum):
    SOLICITACAO = "solicitacao"
    COTACAO = "cotacao"
    AGUARDANDO_OC = "aguardando_oc"
    EM_PRODUCAO = "em_producao"
    PRONTO_PARA_RETIRAR = "pronto_para_retirar"
    ENVIADO_PARA_LOJA = "enviado_para_loja"
    APLICADO = "aplicado"
    CANCELADO = "cancelado"


S = StatusSolicitacao

STATUS_FLOW: Dict[StatusSolicitacao, FrozenSet[StatusSolicitacao]] = {
    S.SOLICITACAO: frozenset({S.COTACAO, S.CANCELADO}),
    S.COTACAO: frozenset({S.AGUARDANDO_OC, S.CANCELADO}),
    S.AGUARDANDO_OC: frozenset({S.EM_PRODUCAO, S.CANCELADO}),
    S.EM_PRODUCAO: frozenset({S.PRONTO_PARA_RETIRAR, S.CANCELADO}),
    S.PRONTO_PARA_RETIRAR: frozenset({S.ENVIADO_PARA_LOJA, S.CANCELADO}),
    S.ENVIADO_PARA_LOJA: frozenset({S.APLICADO, S.CANCELADO}),
    S.APLICADO: frozenset(),
    S.CANCELADO: frozenset(),
}

STATUS_TERMINAIS = frozenset(status for status, destinos in STATUS_FLOW.items() if not destinos)

# Campos da solicitação editáveis via PUT somente nestes status
STATUS_EDITAVEIS = frozenset({S.SOLICITACAO, S.COTACAO})

# Transições que disparam lançamentos automáticos no estoque
STATUS_COM_INTEGRACAO = frozenset({S.PRONTO_PARA_RETIRAR, S.ENVIADO_PARA_LOJA, S.APLICADO})


def parse_status(value: Optional[str]) -> Optional[StatusSolicitacao]:
    if value is None:
        return None
    try:
        return StatusSolicitacao(str(value).strip())
    except ValueError:
        return None


def transicoes_permitidas(status_atual: Optional[str]) -> FrozenSet[StatusSolicitacao]:
    status = parse_status(status_atual)
    if status is None:
        return frozenset()
    return STATUS_FLOW.get(status, frozenset())


def pode_mudar_status(status_atual: Optional[str], status_novo: Optional[str]) -> bool:
    novo = parse_status(status_novo)
    if novo is None:
        return False
    return novo in transicoes_permitidas(status_atual)


def is_terminal(status: Optional[str]) -> bool:
    return parse_status(status) in STATUS_TERMINAIS
