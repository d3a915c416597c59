"""
Razão de estoque: movimentações imutáveis e saldos derivados.

Toda alteração de saldo passa por registrar_movimento, que grava uma
movimentação (entrada, saida, transferencia ou ajuste) e aplica o delta nos
saldos de origem e destino. Saldos nunca ficam negativos: o débito na origem é
um update condicional atômico (quantidade >= delta), então dois débitos
concorrentes no mesmo (produto, local) não passam ambos.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument

from .auth import (
    LOCAL_CENTRAL,
    LOCAL_LOJA,
    Usuario,
    filtro_locais_visiveis,
    garantir_acesso_local,
    locais_visiveis,
    pode_ler_local,
)
from .db import _find_one_by_id, _now_utc, _public_id, db, paginacao, serializar
from .errors import ConfigurationError, DadosInvalidos, InsufficientStock, NotFound

logger = logging.getLogger("estoque_api.ledger")

ENTRADA = "entrada"
SAIDA = "saida"
TRANSFERENCIA = "transferencia"
AJUSTE = "ajuste"
TIPOS_MOVIMENTO = (ENTRADA, SAIDA, TRANSFERENCIA, AJUSTE)


def _quantidade_valida(quantidade: Any) -> float:
    try:
        qv = float(quantidade)
    except (TypeError, ValueError):
        raise DadosInvalidos("Quantidade inválida", quantidade=quantidade)
    if qv <= 0:
        raise DadosInvalidos("Quantidade deve ser maior que zero", quantidade=quantidade)
    return qv


def validar_locais(tipo: str, origem_id: Optional[str], destino_id: Optional[str]) -> None:
    if tipo not in TIPOS_MOVIMENTO:
        raise DadosInvalidos("Tipo de movimentação inválido", tipo=tipo)
    if tipo == ENTRADA:
        ok = origem_id is None and destino_id is not None
    elif tipo == SAIDA:
        ok = origem_id is not None and destino_id is None
    elif tipo == TRANSFERENCIA:
        ok = origem_id is not None and destino_id is not None and str(origem_id) != str(destino_id)
    else:
        ok = (origem_id is None) != (destino_id is None)
    if not ok:
        raise DadosInvalidos(
            f"Origem/destino incompatíveis com movimentação do tipo {tipo}",
            tipo=tipo,
            origem_id=origem_id,
            destino_id=destino_id,
        )


# --- Locais ---

async def obter_local(local_id: str) -> Dict[str, Any]:
    local = await _find_one_by_id("estoque_locais", local_id)
    if not local:
        raise NotFound("Estoque não encontrado", estoque_local_id=local_id)
    return local


async def obter_local_central() -> Dict[str, Any]:
    central = await db.db.estoque_locais.find_one({"tipo": LOCAL_CENTRAL})
    if not central:
        raise ConfigurationError("Estoque central não encontrado")
    return central


async def obter_local_loja(loja_id: Any) -> Dict[str, Any]:
    local = await db.db.estoque_locais.find_one({"tipo": LOCAL_LOJA, "loja_id": str(loja_id)})
    if not local:
        raise ConfigurationError(f"Estoque da loja não encontrado para loja_id: {loja_id}", loja_id=loja_id)
    return local


async def _obter_produto(produto_id: str) -> Dict[str, Any]:
    produto = await _find_one_by_id("estoque_produtos", produto_id)
    if not produto:
        raise NotFound("Produto não encontrado", produto_id=produto_id)
    return produto


# --- Saldos ---

async def saldo_atual(produto_id: str, estoque_local_id: str) -> float:
    saldo = await db.db.estoque_saldos.find_one({"produto_id": produto_id, "estoque_local_id": estoque_local_id})
    return float(saldo.get("quantidade", 0)) if saldo else 0.0


async def garantir_saldo(produto_id: str, estoque_local_id: str) -> None:
    now = _now_utc()
    await db.db.estoque_saldos.update_one(
        {"produto_id": produto_id, "estoque_local_id": estoque_local_id},
        {
            "$setOnInsert": {
                "produto_id": produto_id,
                "estoque_local_id": estoque_local_id,
                "quantidade": 0.0,
                "created_at": now,
                "updated_at": now,
            }
        },
        upsert=True,
    )


async def _debitar(produto_id: str, estoque_local_id: str, quantidade: float) -> None:
    res = await db.db.estoque_saldos.update_one(
        {"produto_id": produto_id, "estoque_local_id": estoque_local_id, "quantidade": {"$gte": quantidade}},
        {"$inc": {"quantidade": -quantidade}, "$set": {"updated_at": _now_utc()}},
    )
    if res.matched_count == 0:
        disponivel = await saldo_atual(produto_id, estoque_local_id)
        raise InsufficientStock(
            f"Saldo insuficiente. Saldo atual: {disponivel}, Solicitado: {quantidade}",
            disponivel=disponivel,
            solicitado=quantidade,
            produto_id=produto_id,
            estoque_local_id=estoque_local_id,
        )


async def _creditar(produto_id: str, estoque_local_id: str, quantidade: float) -> None:
    now = _now_utc()
    await db.db.estoque_saldos.find_one_and_update(
        {"produto_id": produto_id, "estoque_local_id": estoque_local_id},
        {
            "$inc": {"quantidade": quantidade},
            "$set": {"updated_at": now},
            "$setOnInsert": {"produto_id": produto_id, "estoque_local_id": estoque_local_id, "created_at": now},
        },
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


async def _estornar_credito(produto_id: str, estoque_local_id: str, quantidade: float) -> None:
    await db.db.estoque_saldos.update_one(
        {"produto_id": produto_id, "estoque_local_id": estoque_local_id},
        {"$inc": {"quantidade": -quantidade}, "$set": {"updated_at": _now_utc()}},
    )


# --- Movimentações ---

async def registrar_movimento(
    tipo: str,
    produto_id: str,
    quantidade: Any,
    usuario: Usuario,
    origem_id: Optional[str] = None,
    destino_id: Optional[str] = None,
    referencia_tipo: Optional[str] = None,
    referencia_id: Optional[str] = None,
    observacao: Optional[str] = None,
) -> Dict[str, Any]:
    qv = _quantidade_valida(quantidade)
    validar_locais(tipo, origem_id, destino_id)

    produto = await _obter_produto(produto_id)
    pid = _public_id(produto)
    origem = await obter_local(origem_id) if origem_id is not None else None
    destino = await obter_local(destino_id) if destino_id is not None else None
    oid = _public_id(origem)
    did = _public_id(destino)

    if origem is not None:
        await _debitar(pid, oid, qv)
    creditado = False
    try:
        if destino is not None:
            await _creditar(pid, did, qv)
            creditado = True

        now = _now_utc()
        mov_doc = {
            "produto_id": pid,
            "quantidade": qv,
            "tipo": tipo,
            "estoque_local_origem_id": oid,
            "estoque_local_destino_id": did,
            "referencia_tipo": referencia_tipo,
            "referencia_id": referencia_id,
            "observacao": observacao,
            "created_by": usuario.ator,
            "created_at": now,
        }
        res = await db.db.estoque_movimentos.insert_one(mov_doc)
    except Exception:
        # Desfaz o que já foi aplicado nos saldos: nenhum saldo sem movimentação
        if creditado:
            await _estornar_credito(pid, did, qv)
        if origem is not None:
            await _creditar(pid, oid, qv)
        raise

    mov_doc["_id"] = res.inserted_id
    logger.info(
        "estoque.movimento",
        extra={
            "tipo": tipo,
            "produto_id": pid,
            "quantidade": qv,
            "origem_id": oid,
            "destino_id": did,
            "referencia_id": referencia_id,
        },
    )
    return serializar(mov_doc)


async def registrar_movimento_manual(
    tipo: str,
    produto_id: str,
    quantidade: Any,
    usuario: Usuario,
    origem_id: Optional[str] = None,
    destino_id: Optional[str] = None,
    observacao: Optional[str] = None,
) -> Dict[str, Any]:
    """Lançamento direto pela API: checa o escopo de escrita dos locais envolvidos."""
    validar_locais(tipo, origem_id, destino_id)
    for local_id in (origem_id, destino_id):
        if local_id is not None:
            garantir_acesso_local(usuario, await obter_local(local_id), escrita=True)
    return await registrar_movimento(
        tipo,
        produto_id,
        quantidade,
        usuario,
        origem_id=origem_id,
        destino_id=destino_id,
        observacao=observacao,
    )


async def ajustar_estoque(
    produto_id: str,
    estoque_local_id: str,
    quantidade_nova: Any,
    motivo: str,
    usuario: Usuario,
) -> Dict[str, Any]:
    if not (motivo or "").strip():
        raise DadosInvalidos("Motivo é obrigatório")
    try:
        nova = float(quantidade_nova)
    except (TypeError, ValueError):
        raise DadosInvalidos("Quantidade inválida", quantidade_nova=quantidade_nova)
    if nova < 0:
        raise DadosInvalidos("Quantidade deve ser maior ou igual a zero", quantidade_nova=quantidade_nova)

    local = await obter_local(estoque_local_id)
    garantir_acesso_local(usuario, local, escrita=True)
    produto = await _obter_produto(produto_id)
    pid = _public_id(produto)
    lid = _public_id(local)

    atual = await saldo_atual(pid, lid)
    diferenca = nova - atual
    if diferenca == 0:
        raise DadosInvalidos("Nenhuma alteração necessária")

    observacao = f"Ajuste: {motivo}. Quantidade anterior: {atual}, Nova: {nova}"
    if diferenca > 0:
        return await registrar_movimento(AJUSTE, pid, diferenca, usuario, destino_id=lid, observacao=observacao)
    return await registrar_movimento(AJUSTE, pid, -diferenca, usuario, origem_id=lid, observacao=observacao)


# --- Consultas ---

async def _mapa_por_id(coll: str, ids: Iterable[Any]) -> Dict[str, Dict[str, Any]]:
    ids = [str(i) for i in set(ids) if i is not None]
    if not ids:
        return {}
    q_ids: List[Any] = []
    for i in ids:
        q_ids.append(i)
        if ObjectId.is_valid(i):
            q_ids.append(ObjectId(i))
    docs = await db.db[coll].find({"$or": [{"_id": {"$in": q_ids}}, {"id": {"$in": q_ids}}]}).to_list(length=None)
    mapping: Dict[str, Dict[str, Any]] = {}
    for d in docs:
        mapping[str(d.get("_id"))] = d
        if d.get("id") is not None:
            mapping[str(d.get("id"))] = d
    return mapping


async def mapa_usuarios(refs: Iterable[Any]) -> Dict[str, Dict[str, Any]]:
    refs = [str(r) for r in set(refs) if r]
    if not refs:
        return {}
    docs = await db.db.users_regras.find({"user_ref": {"$in": refs}}).to_list(length=None)
    mapping: Dict[str, Dict[str, Any]] = {}
    for d in docs:
        ref = str(d.get("user_ref"))
        mapping[ref] = {"id": ref, "nome": d.get("nome") or "", "email": d.get("email") or ""}
    return mapping


async def _produtos_filtrados(categoria: Optional[str], search: Optional[str]) -> Optional[List[str]]:
    """Ids de produtos que atendem categoria/busca; None quando não há filtro."""
    if not categoria and not search:
        return None
    query: Dict[str, Any] = {}
    if categoria:
        cat = await db.db.estoque_categorias.find_one({"nome": categoria})
        if not cat:
            return []
        query["categoria_id"] = _public_id(cat)
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"nome": {"$regex": pattern, "$options": "i"}},
            {"sku": {"$regex": pattern, "$options": "i"}},
        ]
    produtos = await db.db.estoque_produtos.find(query, {"_id": 1, "id": 1}).to_list(length=None)
    return [_public_id(p) for p in produtos]


async def listar_saldos(
    usuario: Usuario,
    estoque_local_id: Optional[str] = None,
    produto_id: Optional[str] = None,
    categoria: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    per_page: int = 20,
) -> Dict[str, Any]:
    vazio = {"items": [], "pagination": paginacao(0, page, per_page)}
    query: Dict[str, Any] = {}

    if estoque_local_id:
        local = await _find_one_by_id("estoque_locais", estoque_local_id)
        if not local or not pode_ler_local(usuario, local):
            return vazio
        query["estoque_local_id"] = _public_id(local)
    else:
        visiveis = await locais_visiveis(usuario)
        if visiveis is not None:
            query["estoque_local_id"] = {"$in": visiveis}

    produto_ids = await _produtos_filtrados(categoria, search)
    if produto_ids is not None:
        if not produto_ids:
            return vazio
        query["produto_id"] = {"$in": produto_ids}
    if produto_id:
        if produto_ids is not None and produto_id not in produto_ids:
            return vazio
        query["produto_id"] = produto_id

    total = await db.db.estoque_saldos.count_documents(query)
    docs = (
        await db.db.estoque_saldos.find(query)
        .sort([("updated_at", -1), ("_id", -1)])
        .skip((page - 1) * per_page)
        .limit(per_page)
        .to_list(length=per_page)
    )

    prod_map = await _mapa_por_id("estoque_produtos", [d.get("produto_id") for d in docs])
    cat_map = await _mapa_por_id("estoque_categorias", [p.get("categoria_id") for p in prod_map.values()])
    local_map = await _mapa_por_id("estoque_locais", [d.get("estoque_local_id") for d in docs])

    items = []
    for d in docs:
        produto = prod_map.get(str(d.get("produto_id")))
        produto_out = serializar(produto)
        if produto_out is not None:
            produto_out["categoria"] = serializar(cat_map.get(str(produto.get("categoria_id"))))
        items.append({
            **serializar(d),
            "quantidade": float(d.get("quantidade", 0)),
            "produto": produto_out,
            "estoque_local": serializar(local_map.get(str(d.get("estoque_local_id")))),
        })
    return {"items": items, "pagination": paginacao(total, page, per_page)}


async def listar_movimentos(
    usuario: Usuario,
    produto_id: Optional[str] = None,
    estoque_local_id: Optional[str] = None,
    referencia_id: Optional[str] = None,
    referencia_tipo: Optional[str] = None,
    tipo: Optional[str] = None,
    page: int = 1,
    per_page: int = 20,
) -> Dict[str, Any]:
    conds: List[Dict[str, Any]] = []
    if produto_id:
        conds.append({"produto_id": produto_id})
    if referencia_id:
        conds.append({"referencia_id": referencia_id})
    if referencia_tipo:
        conds.append({"referencia_tipo": referencia_tipo})
    if tipo:
        conds.append({"tipo": tipo})
    if estoque_local_id:
        conds.append({"$or": [
            {"estoque_local_origem_id": estoque_local_id},
            {"estoque_local_destino_id": estoque_local_id},
        ]})

    visiveis = await locais_visiveis(usuario)
    if visiveis is not None:
        conds.append({"$or": [
            {"estoque_local_origem_id": {"$in": visiveis}},
            {"estoque_local_destino_id": {"$in": visiveis}},
        ]})

    query: Dict[str, Any] = {"$and": conds} if conds else {}
    total = await db.db.estoque_movimentos.count_documents(query)
    movs = (
        await db.db.estoque_movimentos.find(query)
        .sort([("created_at", -1), ("_id", -1)])
        .skip((page - 1) * per_page)
        .limit(per_page)
        .to_list(length=per_page)
    )

    prod_map = await _mapa_por_id("estoque_produtos", [m.get("produto_id") for m in movs])
    local_ids = [m.get("estoque_local_origem_id") for m in movs] + [m.get("estoque_local_destino_id") for m in movs]
    local_map = await _mapa_por_id("estoque_locais", local_ids)
    users_map = await mapa_usuarios(m.get("created_by") for m in movs)

    items = []
    for m in movs:
        items.append({
            **serializar(m),
            "produto": serializar(prod_map.get(str(m.get("produto_id")))),
            "origem": serializar(local_map.get(str(m.get("estoque_local_origem_id")))),
            "destino": serializar(local_map.get(str(m.get("estoque_local_destino_id")))),
            "created_by_user": users_map.get(str(m.get("created_by"))),
        })
    return {"items": items, "pagination": paginacao(total, page, per_page)}


async def listar_locais(usuario: Usuario) -> List[Dict[str, Any]]:
    locais = await db.db.estoque_locais.find(filtro_locais_visiveis(usuario)).sort("nome", 1).to_list(length=None)
    lojas_map = await _mapa_por_id("lojas", [loc.get("loja_id") for loc in locais])
    return [{**serializar(loc), "loja": serializar(lojas_map.get(str(loc.get("loja_id"))))} for loc in locais]
