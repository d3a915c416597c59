"""
Integração automática entre o ciclo da solicitação e o estoque.

Ao entrar em pronto_para_retirar, enviado_para_loja ou aplicado, cada item da
solicitação gera uma movimentação com referencia_tipo='solicitacao':

    pronto_para_retirar  entrada no estoque central
    enviado_para_loja    transferencia central -> estoque da loja
    aplicado             saida do estoque da loja (baixa definitiva)

Local ausente (central ou estoque da loja) aborta a integração inteira com
ConfigurationError. Falha ao lançar um item é registrada em log e no
relatório; os demais itens seguem normalmente.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .auth import Usuario
from .db import _public_id, db
from .errors import PostingFailure
from .ledger import ENTRADA, SAIDA, TRANSFERENCIA, obter_local_central, obter_local_loja, registrar_movimento
from .status import StatusSolicitacao, parse_status

logger = logging.getLogger("estoque_api.fulfillment")

S = StatusSolicitacao

REFERENCIA_SOLICITACAO = "solicitacao"

# Ordem de preferência das quantidades do item: vence o primeiro valor informado
QUANTIDADE_PRECEDENCIA: Dict[StatusSolicitacao, Tuple[str, ...]] = {
    S.PRONTO_PARA_RETIRAR: ("quantidade_aprovada", "quantidade_solicitada"),
    S.ENVIADO_PARA_LOJA: ("quantidade_enviada", "quantidade_aprovada", "quantidade_solicitada"),
    S.APLICADO: ("quantidade_enviada", "quantidade_aprovada", "quantidade_solicitada"),
}

# No envio e na aplicação, zero conta como não informado
ZERO_COMO_VAZIO = frozenset({S.ENVIADO_PARA_LOJA, S.APLICADO})

LANCADO = "lancado"
IGNORADO = "ignorado"
FALHA = "falha"


@dataclass(frozen=True)
class _Plano:
    tipo: str
    origem: Optional[str]
    destino: Optional[str]
    descricao: str
    rotulo_status: str


PLANOS: Dict[StatusSolicitacao, _Plano] = {
    S.PRONTO_PARA_RETIRAR: _Plano(ENTRADA, None, "central", "Entrada automática", "Pronto para Retirar"),
    S.ENVIADO_PARA_LOJA: _Plano(TRANSFERENCIA, "central", "loja", "Transferência automática", "Enviado para Loja"),
    S.APLICADO: _Plano(SAIDA, "loja", None, "Baixa definitiva", "Instalado/Aplicado"),
}


@dataclass
class ResultadoItem:
    item_id: Optional[str]
    produto_id: Optional[str]
    quantidade: float
    situacao: str
    movimento_id: Optional[str] = None
    erro: Optional[str] = None


@dataclass
class RelatorioIntegracao:
    solicitacao_id: str
    status: str
    tipo_movimento: str
    origem_id: Optional[str] = None
    destino_id: Optional[str] = None
    itens: List[ResultadoItem] = field(default_factory=list)

    @property
    def lancados(self) -> List[ResultadoItem]:
        return [r for r in self.itens if r.situacao == LANCADO]

    @property
    def ignorados(self) -> List[ResultadoItem]:
        return [r for r in self.itens if r.situacao == IGNORADO]

    @property
    def falhas(self) -> List[ResultadoItem]:
        return [r for r in self.itens if r.situacao == FALHA]


def resolver_quantidade(item: Dict[str, Any], status: Any) -> float:
    st = parse_status(status)
    ignora_zero = st in ZERO_COMO_VAZIO
    for campo in QUANTIDADE_PRECEDENCIA.get(st, ()):
        valor = item.get(campo)
        if valor is None:
            continue
        quantidade = float(valor)
        if quantidade == 0 and ignora_zero:
            continue
        return quantidade
    return 0.0


async def _resolver_local(papel: Optional[str], loja_id: Any) -> Optional[Dict[str, Any]]:
    if papel is None:
        return None
    if papel == "central":
        return await obter_local_central()
    return await obter_local_loja(loja_id)


async def _lancar_item(
    item: Dict[str, Any],
    status: StatusSolicitacao,
    plano: _Plano,
    solicitacao_id: str,
    origem_id: Optional[str],
    destino_id: Optional[str],
    usuario: Usuario,
) -> ResultadoItem:
    item_id = _public_id(item)
    produto_id = item.get("produto_id")
    try:
        quantidade = resolver_quantidade(item, status)
    except (TypeError, ValueError) as exc:
        falha = PostingFailure(f"Quantidade inválida no item {item_id}: {exc}", item_id=item_id)
        logger.error(falha.message, extra={"solicitacao_id": solicitacao_id, "produto_id": produto_id})
        return ResultadoItem(item_id, produto_id, 0.0, FALHA, erro=falha.message)

    if quantidade <= 0:
        logger.warning(
            "Quantidade inválida (%s) para produto %s, pulando...",
            quantidade,
            produto_id,
            extra={"solicitacao_id": solicitacao_id, "item_id": item_id},
        )
        return ResultadoItem(item_id, produto_id, quantidade, IGNORADO)

    try:
        movimento = await registrar_movimento(
            plano.tipo,
            str(produto_id),
            quantidade,
            usuario,
            origem_id=origem_id,
            destino_id=destino_id,
            referencia_tipo=REFERENCIA_SOLICITACAO,
            referencia_id=solicitacao_id,
            observacao=f"{plano.descricao} - Solicitação {solicitacao_id} - Status: {plano.rotulo_status}",
        )
    except Exception as exc:
        falha = PostingFailure(
            f"Erro ao criar movimentação de {plano.tipo} para produto {produto_id}: {exc}",
            item_id=item_id,
            produto_id=produto_id,
        )
        logger.error(falha.message, exc_info=exc, extra={"solicitacao_id": solicitacao_id})
        return ResultadoItem(item_id, produto_id, quantidade, FALHA, erro=falha.message)

    return ResultadoItem(item_id, produto_id, quantidade, LANCADO, movimento_id=movimento.get("id"))


async def aplicar_efeitos_estoque(
    solicitacao: Dict[str, Any],
    status_novo: Any,
    usuario: Usuario,
) -> Optional[RelatorioIntegracao]:
    """Lança as movimentações da transição; None quando o status não integra com estoque.

    Levanta ConfigurationError se um local necessário não existe.
    """
    status = parse_status(status_novo)
    plano = PLANOS.get(status)
    if plano is None:
        return None

    solicitacao_id = _public_id(solicitacao)
    loja_id = solicitacao.get("loja_id")
    logger.info(
        "Processando integração com estoque para solicitação %s - Status: %s",
        solicitacao_id,
        status.value,
        extra={"loja_id": loja_id},
    )

    origem = await _resolver_local(plano.origem, loja_id)
    destino = await _resolver_local(plano.destino, loja_id)

    relatorio = RelatorioIntegracao(
        solicitacao_id=solicitacao_id,
        status=status.value,
        tipo_movimento=plano.tipo,
        origem_id=_public_id(origem),
        destino_id=_public_id(destino),
    )

    itens = await db.db.estoque_solicitacao_itens.find({"solicitacao_id": solicitacao_id}).to_list(length=None)
    if not itens:
        logger.warning("Nenhum item encontrado para a solicitação %s", solicitacao_id)
        return relatorio

    for item in itens:
        resultado = await _lancar_item(
            item, status, plano, solicitacao_id, relatorio.origem_id, relatorio.destino_id, usuario
        )
        relatorio.itens.append(resultado)

    logger.info(
        "Integração concluída para solicitação %s: %d lançados, %d ignorados, %d falhas",
        solicitacao_id,
        len(relatorio.lancados),
        len(relatorio.ignorados),
        len(relatorio.falhas),
    )
    return relatorio
