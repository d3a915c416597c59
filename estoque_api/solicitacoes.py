"""
Solicitações de materiais: cadastro, itens, comprovantes e mudança de status.

Toda operação recebe o Usuario explicitamente e aplica o escopo de loja antes
de qualquer escrita. A mudança de status grava o novo status, registra o log
da transição e, nos status com integração, dispara os lançamentos de estoque
(fulfillment). Erros da integração nunca desfazem o status já gravado.
"""

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING

from .auth import Usuario, filtro_lojas, garantir_acesso_loja
from .db import _build_id_query, _find_one_by_id, _now_utc, _public_id, db, paginacao, serializar
from .errors import ConfigurationError, DadosInvalidos, Forbidden, InvalidTransition, NotFound
from .fulfillment import aplicar_efeitos_estoque
from .ledger import _mapa_por_id, mapa_usuarios
from .status import (
    STATUS_EDITAVEIS,
    StatusSolicitacao,
    is_terminal,
    parse_status,
    pode_mudar_status,
)

logger = logging.getLogger("estoque_api.solicitacoes")

S = StatusSolicitacao

CAMPOS_EDITAVEIS = ("objetivo", "observacoes", "referencias", "ativo")
CAMPOS_ITEM_EDITAVEIS = ("quantidade_solicitada", "quantidade_aprovada", "quantidade_enviada", "observacao_item")
TIPOS_COMPROVANTE = ("retirada", "envio", "aplicacao")

# created_at tem resolução de milissegundos; _id desempata
MAIS_RECENTES = [("created_at", DESCENDING), ("_id", DESCENDING)]


async def _obter_doc(solicitacao_id: str) -> Dict[str, Any]:
    doc = await _find_one_by_id("estoque_solicitacoes", solicitacao_id)
    if not doc:
        raise NotFound("Solicitação não encontrada", solicitacao_id=solicitacao_id)
    return doc


async def _obter_com_acesso(solicitacao_id: str, usuario: Usuario) -> Dict[str, Any]:
    doc = await _obter_doc(solicitacao_id)
    garantir_acesso_loja(usuario, doc.get("loja_id"))
    return doc


async def _obter_produto(produto_id: str) -> Dict[str, Any]:
    produto = await _find_one_by_id("estoque_produtos", produto_id)
    if not produto:
        raise NotFound("Produto não encontrado", produto_id=produto_id)
    return produto


def _quantidade(valor: Any, campo: str, minimo_exclusivo: bool = True) -> float:
    try:
        qv = float(valor)
    except (TypeError, ValueError):
        raise DadosInvalidos(f"{campo} inválida", campo=campo)
    if minimo_exclusivo and qv <= 0:
        raise DadosInvalidos(f"{campo} deve ser maior que zero", campo=campo)
    if not minimo_exclusivo and qv < 0:
        raise DadosInvalidos(f"{campo} deve ser maior ou igual a zero", campo=campo)
    return qv


def _utc_naive(value: datetime) -> datetime:
    # Datas são gravadas em UTC; o Mongo devolve sem tzinfo
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _normalizar_referencias(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, list):
        return [v for v in value if isinstance(v, str)]
    if isinstance(value, dict):
        return [v for v in value.values() if isinstance(v, str)]
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            return []
        return [v for v in parsed if isinstance(v, str)] if isinstance(parsed, list) else []
    return []


async def _itens_com_produto(solicitacao_ids: List[str]) -> Dict[str, List[Dict[str, Any]]]:
    if not solicitacao_ids:
        return {}
    itens = await db.db.estoque_solicitacao_itens.find({"solicitacao_id": {"$in": solicitacao_ids}}).to_list(length=None)
    prod_map = await _mapa_por_id("estoque_produtos", [it.get("produto_id") for it in itens])
    out: Dict[str, List[Dict[str, Any]]] = {}
    for it in itens:
        item_out = serializar(it)
        item_out["produto"] = serializar(prod_map.get(str(it.get("produto_id"))))
        out.setdefault(str(it.get("solicitacao_id")), []).append(item_out)
    return out


async def _enriquecer(docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    ids = [_public_id(d) for d in docs]
    itens_map = await _itens_com_produto(ids)
    lojas_map = await _mapa_por_id("lojas", [d.get("loja_id") for d in docs])
    users_map = await mapa_usuarios([d.get("supervisor_id") for d in docs] + [d.get("criado_por") for d in docs])

    out = []
    for d in docs:
        sid = _public_id(d)
        out.append({
            **serializar(d),
            "referencias": _normalizar_referencias(d.get("referencias")),
            "loja": serializar(lojas_map.get(str(d.get("loja_id")))),
            "itens": itens_map.get(sid, []),
            "supervisor": users_map.get(str(d.get("supervisor_id"))),
            "criado_por_user": users_map.get(str(d.get("criado_por"))),
        })
    return out


# --- Consultas ---

async def listar_solicitacoes(
    usuario: Usuario,
    status: Optional[str] = None,
    loja_id: Optional[str] = None,
    search: Optional[str] = None,
    periodo_inicio: Optional[datetime] = None,
    periodo_fim: Optional[datetime] = None,
    ativo: Optional[str] = None,
    page: int = 1,
    per_page: int = 20,
) -> Dict[str, Any]:
    conds: List[Dict[str, Any]] = []
    escopo = filtro_lojas(usuario)
    if escopo:
        conds.append(escopo)

    # Por padrão só as ativas; 'all' mostra todas
    ativo_norm = (ativo or "true").strip().lower()
    if ativo_norm != "all":
        conds.append({"ativo": ativo_norm == "true"})

    if status:
        conds.append({"status": status})
    if loja_id:
        conds.append({"loja_id": loja_id})
    if periodo_inicio or periodo_fim:
        faixa: Dict[str, Any] = {}
        if periodo_inicio:
            faixa["$gte"] = _utc_naive(periodo_inicio)
        if periodo_fim:
            faixa["$lte"] = _utc_naive(periodo_fim)
        conds.append({"created_at": faixa})
    if search:
        pattern = re.escape(search)
        lojas = await db.db.lojas.find({"nome": {"$regex": pattern, "$options": "i"}}).to_list(length=None)
        conds.append({"$or": [
            {"objetivo": {"$regex": pattern, "$options": "i"}},
            {"loja_id": {"$in": [_public_id(lj) for lj in lojas]}},
        ]})

    query: Dict[str, Any] = {"$and": conds} if conds else {}
    total = await db.db.estoque_solicitacoes.count_documents(query)
    docs = (
        await db.db.estoque_solicitacoes.find(query)
        .sort(MAIS_RECENTES)
        .skip((page - 1) * per_page)
        .limit(per_page)
        .to_list(length=per_page)
    )
    return {"items": await _enriquecer(docs), "pagination": paginacao(total, page, per_page)}


async def obter_solicitacao(solicitacao_id: str, usuario: Usuario) -> Dict[str, Any]:
    doc = await _obter_com_acesso(solicitacao_id, usuario)
    sid = _public_id(doc)
    out = (await _enriquecer([doc]))[0]

    logs = await db.db.estoque_solicitacao_status_logs.find({"solicitacao_id": sid}).sort(MAIS_RECENTES).to_list(length=None)
    comprovantes = await db.db.estoque_solicitacao_comprovantes.find({"solicitacao_id": sid}).sort(MAIS_RECENTES).to_list(length=None)
    users_map = await mapa_usuarios(
        [lg.get("alterado_por") for lg in logs] + [c.get("created_by") for c in comprovantes]
    )
    out["logs"] = [
        {**serializar(lg), "alterado_por_user": users_map.get(str(lg.get("alterado_por")))} for lg in logs
    ]
    out["comprovantes"] = [
        {**serializar(c), "created_by_user": users_map.get(str(c.get("created_by")))} for c in comprovantes
    ]
    return out


async def listar_logs(solicitacao_id: str, usuario: Usuario) -> List[Dict[str, Any]]:
    doc = await _obter_com_acesso(solicitacao_id, usuario)
    logs = (
        await db.db.estoque_solicitacao_status_logs.find({"solicitacao_id": _public_id(doc)})
        .sort(MAIS_RECENTES)
        .to_list(length=None)
    )
    users_map = await mapa_usuarios(lg.get("alterado_por") for lg in logs)
    return [{**serializar(lg), "alterado_por_user": users_map.get(str(lg.get("alterado_por")))} for lg in logs]


async def listar_alertas(usuario: Usuario) -> List[Dict[str, Any]]:
    query = {"status": S.PRONTO_PARA_RETIRAR.value, **filtro_lojas(usuario)}
    docs = await db.db.estoque_solicitacoes.find(query).sort(MAIS_RECENTES).to_list(length=None)
    return await _enriquecer(docs)


# --- Cadastro ---

async def criar_solicitacao(
    usuario: Usuario,
    loja_id: str,
    itens: List[Dict[str, Any]],
    objetivo: Optional[str] = None,
    observacoes: Optional[str] = None,
    referencias: Optional[List[str]] = None,
) -> Dict[str, Any]:
    loja = await _find_one_by_id("lojas", loja_id)
    if not loja:
        raise NotFound("Loja não encontrada", loja_id=loja_id)
    loja_out = _public_id(loja)
    garantir_acesso_loja(usuario, loja_out, "Acesso negado a esta loja")

    if not itens:
        raise DadosInvalidos("Informe pelo menos um item")

    itens_out = []
    for it in itens:
        qv = _quantidade(it.get("quantidade_solicitada"), "Quantidade")
        produto = await _obter_produto(str(it.get("produto_id")))
        itens_out.append({
            "produto_id": _public_id(produto),
            "quantidade_solicitada": qv,
            "quantidade_aprovada": None,
            "quantidade_enviada": None,
            "observacao_item": it.get("observacao_item"),
        })

    now = _now_utc()
    doc = {
        "loja_id": loja_out,
        "objetivo": objetivo,
        "observacoes": observacoes,
        "referencias": [r for r in (referencias or []) if r],
        "supervisor_id": usuario.ator,
        "criado_por": usuario.ator,
        "status": S.SOLICITACAO.value,
        "ativo": True,
        "created_at": now,
        "updated_at": now,
    }
    res = await db.db.estoque_solicitacoes.insert_one(doc)
    sid = str(res.inserted_id)

    for item in itens_out:
        item["solicitacao_id"] = sid
        item["created_at"] = now
    await db.db.estoque_solicitacao_itens.insert_many(itens_out)
    await _registrar_log_status(sid, None, S.SOLICITACAO.value, usuario)

    logger.info("solicitacao.criada", extra={"solicitacao_id": sid, "loja_id": loja_out, "itens": len(itens_out)})
    return (await _enriquecer([await _obter_doc(sid)]))[0]


async def atualizar_solicitacao(solicitacao_id: str, dados: Dict[str, Any], usuario: Usuario) -> Dict[str, Any]:
    doc = await _obter_com_acesso(solicitacao_id, usuario)
    update_data = {k: v for k, v in dados.items() if k in CAMPOS_EDITAVEIS and v is not None}
    if not update_data:
        raise DadosInvalidos("Nada para atualizar")

    # Desativar é permitido em qualquer status; editar, só nos status iniciais
    apenas_desativando = update_data == {"ativo": False}
    if not apenas_desativando and parse_status(doc.get("status")) not in STATUS_EDITAVEIS:
        raise DadosInvalidos("Não é possível editar solicitação neste status", status=doc.get("status"))

    if "referencias" in update_data:
        update_data["referencias"] = _normalizar_referencias(update_data["referencias"])
    update_data["updated_at"] = _now_utc()
    await db.db.estoque_solicitacoes.update_one({"_id": doc["_id"]}, {"$set": update_data})
    return serializar(await _obter_doc(_public_id(doc)))


# --- Itens ---

async def _item_da_solicitacao(solicitacao_id: str, item_id: str) -> Dict[str, Any]:
    query = _build_id_query(item_id)
    query["solicitacao_id"] = solicitacao_id
    item = await db.db.estoque_solicitacao_itens.find_one(query)
    if not item:
        raise NotFound("Item não encontrado", item_id=item_id)
    return item


async def adicionar_item(
    solicitacao_id: str,
    produto_id: str,
    quantidade_solicitada: Any,
    usuario: Usuario,
    observacao_item: Optional[str] = None,
) -> Dict[str, Any]:
    doc = await _obter_com_acesso(solicitacao_id, usuario)
    if doc.get("status") != S.SOLICITACAO.value:
        raise DadosInvalidos("Não é possível adicionar itens neste status", status=doc.get("status"))
    qv = _quantidade(quantidade_solicitada, "Quantidade")
    produto = await _obter_produto(produto_id)

    item = {
        "solicitacao_id": _public_id(doc),
        "produto_id": _public_id(produto),
        "quantidade_solicitada": qv,
        "quantidade_aprovada": None,
        "quantidade_enviada": None,
        "observacao_item": observacao_item,
        "created_at": _now_utc(),
    }
    res = await db.db.estoque_solicitacao_itens.insert_one(item)
    item["_id"] = res.inserted_id
    return {**serializar(item), "produto": serializar(produto)}


async def atualizar_item(solicitacao_id: str, item_id: str, dados: Dict[str, Any], usuario: Usuario) -> Dict[str, Any]:
    doc = await _obter_com_acesso(solicitacao_id, usuario)
    if is_terminal(doc.get("status")):
        raise DadosInvalidos("Não é possível alterar itens neste status", status=doc.get("status"))
    item = await _item_da_solicitacao(_public_id(doc), item_id)

    update_data: Dict[str, Any] = {}
    for campo in CAMPOS_ITEM_EDITAVEIS:
        if campo not in dados or dados[campo] is None:
            continue
        if campo == "quantidade_solicitada":
            update_data[campo] = _quantidade(dados[campo], "Quantidade solicitada")
        elif campo in ("quantidade_aprovada", "quantidade_enviada"):
            update_data[campo] = _quantidade(dados[campo], campo.replace("_", " ").capitalize(), minimo_exclusivo=False)
        else:
            update_data[campo] = dados[campo]
    if not update_data:
        raise DadosInvalidos("Nada para atualizar")

    update_data["updated_at"] = _now_utc()
    await db.db.estoque_solicitacao_itens.update_one({"_id": item["_id"]}, {"$set": update_data})
    atualizado = await db.db.estoque_solicitacao_itens.find_one({"_id": item["_id"]})
    produto = await _find_one_by_id("estoque_produtos", atualizado.get("produto_id"))
    return {**serializar(atualizado), "produto": serializar(produto)}


async def remover_item(solicitacao_id: str, item_id: str, usuario: Usuario) -> None:
    doc = await _obter_com_acesso(solicitacao_id, usuario)
    if doc.get("status") != S.SOLICITACAO.value:
        raise DadosInvalidos("Não é possível remover itens neste status", status=doc.get("status"))
    item = await _item_da_solicitacao(_public_id(doc), item_id)
    await db.db.estoque_solicitacao_itens.delete_one({"_id": item["_id"]})


# --- Comprovantes ---

async def registrar_comprovante(
    solicitacao_id: str,
    tipo: str,
    usuario: Usuario,
    imagem_url: Optional[str] = None,
    assinatura_url: Optional[str] = None,
    tracking_code: Optional[str] = None,
    observacao: Optional[str] = None,
) -> Dict[str, Any]:
    if tipo not in TIPOS_COMPROVANTE:
        raise DadosInvalidos("Tipo de comprovante inválido", tipo=tipo)
    doc = await _obter_com_acesso(solicitacao_id, usuario)
    comprovante = {
        "solicitacao_id": _public_id(doc),
        "tipo": tipo,
        "imagem_url": imagem_url,
        "assinatura_url": assinatura_url,
        "tracking_code": tracking_code,
        "observacao": observacao,
        "created_by": usuario.ator,
        "created_at": _now_utc(),
    }
    res = await db.db.estoque_solicitacao_comprovantes.insert_one(comprovante)
    comprovante["_id"] = res.inserted_id
    return serializar(comprovante)


# --- Status ---

async def _registrar_log_status(
    solicitacao_id: str,
    status_anterior: Optional[str],
    status_novo: str,
    usuario: Usuario,
) -> None:
    await db.db.estoque_solicitacao_status_logs.insert_one({
        "solicitacao_id": solicitacao_id,
        "status_anterior": status_anterior,
        "status_novo": status_novo,
        "alterado_por": usuario.ator,
        "motivo": None,
        "created_at": _now_utc(),
    })


async def _persistir_status(doc: Dict[str, Any], status_novo: str, usuario: Usuario) -> None:
    """Grava o status (compare-and-set no status atual) e o log da transição."""
    status_atual = doc.get("status")
    res = await db.db.estoque_solicitacoes.update_one(
        {"_id": doc["_id"], "status": status_atual},
        {"$set": {"status": status_novo, "updated_at": _now_utc()}},
    )
    if res.matched_count == 0:
        raise InvalidTransition(
            "A solicitação foi alterada por outra operação. Recarregue e tente novamente",
            status_atual=status_atual,
            status_novo=status_novo,
        )
    await _registrar_log_status(_public_id(doc), status_atual, status_novo, usuario)


async def _anotar_motivo(solicitacao_id: str, status_anterior: str, status_novo: str, motivo: str) -> None:
    logs = (
        await db.db.estoque_solicitacao_status_logs.find({
            "solicitacao_id": solicitacao_id,
            "status_anterior": status_anterior,
            "status_novo": status_novo,
        })
        .sort(MAIS_RECENTES)
        .limit(1)
        .to_list(length=1)
    )
    if logs:
        await db.db.estoque_solicitacao_status_logs.update_one({"_id": logs[0]["_id"]}, {"$set": {"motivo": motivo}})


async def _executar_transicao(
    doc: Dict[str, Any],
    status_novo: str,
    motivo: Optional[str],
    usuario: Usuario,
) -> Dict[str, Any]:
    sid = _public_id(doc)
    status_anterior = doc.get("status")
    await _persistir_status(doc, status_novo, usuario)
    if motivo:
        await _anotar_motivo(sid, status_anterior, status_novo, motivo)
    logger.info(
        "solicitacao.status",
        extra={"solicitacao_id": sid, "status_anterior": status_anterior, "status_novo": status_novo},
    )

    atualizado = await _obter_doc(sid)
    try:
        await aplicar_efeitos_estoque(atualizado, status_novo, usuario)
    except ConfigurationError as exc:
        # O status já foi gravado; a conciliação do estoque fica para o operador
        logger.error(
            "Erro ao processar integração com estoque (%s): %s",
            status_novo,
            exc.message,
            extra={"solicitacao_id": sid, **exc.data},
        )
    return serializar(atualizado)


async def change_status(
    solicitacao_id: str,
    status_novo: str,
    usuario: Usuario,
    motivo: Optional[str] = None,
) -> Dict[str, Any]:
    doc = await _obter_com_acesso(solicitacao_id, usuario)
    status_atual = doc.get("status")
    if not pode_mudar_status(status_atual, status_novo):
        raise InvalidTransition(
            f"Não é possível mudar de {status_atual} para {status_novo}",
            status_atual=status_atual,
            status_novo=status_novo,
        )
    return await _executar_transicao(doc, parse_status(status_novo).value, motivo, usuario)


async def aprovar_oc(solicitacao_id: str, usuario: Usuario) -> Dict[str, Any]:
    if not usuario.is_diretor:
        raise Forbidden("Acesso negado. Apenas diretores.")
    doc = await _obter_com_acesso(solicitacao_id, usuario)
    if doc.get("status") != S.AGUARDANDO_OC.value or not pode_mudar_status(doc.get("status"), S.EM_PRODUCAO):
        raise InvalidTransition("Solicitação não está aguardando OC", status_atual=doc.get("status"))

    # Itens só são aprovados depois que a transição venceu o compare-and-set
    atualizado = await _executar_transicao(doc, S.EM_PRODUCAO.value, "OC aprovada", usuario)

    # Aprovação integral: quantidade_aprovada = quantidade_solicitada
    itens = await db.db.estoque_solicitacao_itens.find({"solicitacao_id": _public_id(doc)}).to_list(length=None)
    now = _now_utc()
    for item in itens:
        await db.db.estoque_solicitacao_itens.update_one(
            {"_id": item["_id"]},
            {"$set": {"quantidade_aprovada": item.get("quantidade_solicitada"), "updated_at": now}},
        )
    return atualizado


async def reprovar_oc(solicitacao_id: str, motivo: Optional[str], usuario: Usuario) -> Dict[str, Any]:
    if not usuario.is_diretor:
        raise Forbidden("Acesso negado. Apenas diretores.")
    if not (motivo or "").strip():
        raise DadosInvalidos("Motivo é obrigatório")
    doc = await _obter_com_acesso(solicitacao_id, usuario)
    # Retorno dedicado aguardando_oc -> cotacao, fora da tabela de avanço
    if doc.get("status") != S.AGUARDANDO_OC.value:
        raise InvalidTransition("Solicitação não está aguardando OC", status_atual=doc.get("status"))
    return await _executar_transicao(doc, S.COTACAO.value, motivo.strip(), usuario)
