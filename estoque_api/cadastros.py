"""
Cadastros de apoio: produtos, categorias e lojas.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from bson import ObjectId

from .auth import Usuario
from .db import _find_one_by_id, _now_utc, _public_id, db, serializar
from .errors import ConfigurationError, DadosInvalidos, NotFound
from .ledger import ENTRADA, _mapa_por_id, garantir_saldo, obter_local_central, registrar_movimento

logger = logging.getLogger("estoque_api.cadastros")

CAMPOS_PRODUTO = (
    "nome",
    "sku",
    "ativo",
    "estoque_minimo",
    "imagem_url",
    "image_1_url",
    "image_2_url",
    "image_3_url",
    "imagem_capa_index",
)


# --- Categorias ---

def _nome_exato(nome: str) -> Dict[str, Any]:
    return {"$regex": f"^{re.escape(nome.strip())}$", "$options": "i"}


async def _obter_categoria(categoria_id: str) -> Dict[str, Any]:
    cat = await _find_one_by_id("estoque_categorias", categoria_id)
    if not cat:
        raise NotFound("Categoria não encontrada", categoria_id=categoria_id)
    return cat


async def listar_categorias(search: Optional[str] = None, ativo: Optional[bool] = None) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {}
    if search:
        query["nome"] = {"$regex": re.escape(search), "$options": "i"}
    if ativo is not None:
        query["ativo"] = ativo
    cats = await db.db.estoque_categorias.find(query).sort("nome", 1).to_list(length=None)
    return [serializar(c) for c in cats]


async def obter_categoria(categoria_id: str) -> Dict[str, Any]:
    return serializar(await _obter_categoria(categoria_id))


async def criar_categoria(nome: str, descricao: Optional[str] = None, ativo: bool = True) -> Dict[str, Any]:
    if not (nome or "").strip():
        raise DadosInvalidos("Nome é obrigatório")
    if await db.db.estoque_categorias.find_one({"nome": _nome_exato(nome)}):
        raise DadosInvalidos("Já existe uma categoria com este nome", nome=nome)

    doc = {"nome": nome.strip(), "descricao": descricao, "ativo": ativo, "created_at": _now_utc()}
    res = await db.db.estoque_categorias.insert_one(doc)
    doc["_id"] = res.inserted_id
    return serializar(doc)


async def atualizar_categoria(categoria_id: str, dados: Dict[str, Any]) -> Dict[str, Any]:
    existing = await _obter_categoria(categoria_id)
    update_data = {k: v for k, v in dados.items() if k in ("nome", "descricao", "ativo") and v is not None}
    if not update_data:
        raise DadosInvalidos("Nada para atualizar")

    nome = update_data.get("nome")
    if nome is not None:
        if not nome.strip():
            raise DadosInvalidos("Nome é obrigatório")
        duplicate = await db.db.estoque_categorias.find_one({"nome": _nome_exato(nome), "_id": {"$ne": existing["_id"]}})
        if duplicate:
            raise DadosInvalidos("Já existe uma categoria com este nome", nome=nome)
        update_data["nome"] = nome.strip()

    update_data["updated_at"] = _now_utc()
    await db.db.estoque_categorias.update_one({"_id": existing["_id"]}, {"$set": update_data})
    if "nome" in update_data:
        # Produtos guardam o nome da categoria por compatibilidade
        await db.db.estoque_produtos.update_many(
            {"categoria_id": _public_id(existing)}, {"$set": {"categoria": update_data["nome"]}}
        )
    return serializar(await db.db.estoque_categorias.find_one({"_id": existing["_id"]}))


async def remover_categoria(categoria_id: str) -> None:
    existing = await _obter_categoria(categoria_id)
    if await db.db.estoque_produtos.count_documents({"categoria_id": _public_id(existing)}) > 0:
        raise DadosInvalidos("Não é possível excluir categoria que possui produtos vinculados")
    await db.db.estoque_categorias.delete_one({"_id": existing["_id"]})


async def _resolver_categoria(categoria_id: Optional[str], categoria_nome: Optional[str]) -> Dict[str, Any]:
    if categoria_id:
        cat = await _find_one_by_id("estoque_categorias", categoria_id)
    elif categoria_nome:
        cat = await db.db.estoque_categorias.find_one({"nome": categoria_nome})
    else:
        raise DadosInvalidos("Categoria (categoria_id ou categoria) é obrigatória")
    if not cat:
        raise DadosInvalidos("Categoria não encontrada", categoria_id=categoria_id, categoria=categoria_nome)
    return {"categoria_id": _public_id(cat), "categoria": cat.get("nome")}


# --- Produtos ---

async def _obter_produto(produto_id: str) -> Dict[str, Any]:
    produto = await _find_one_by_id("estoque_produtos", produto_id)
    if not produto:
        raise NotFound("Produto não encontrado", produto_id=produto_id)
    return produto


async def _com_categoria(produtos: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    cat_map = await _mapa_por_id("estoque_categorias", [p.get("categoria_id") for p in produtos])
    return [
        {**serializar(p), "categoria": serializar(cat_map.get(str(p.get("categoria_id"))))} for p in produtos
    ]


async def listar_produtos(
    search: Optional[str] = None,
    categoria_id: Optional[str] = None,
    categoria: Optional[str] = None,
    ativo: Optional[bool] = None,
    com_estoque_local_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {}
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"nome": {"$regex": pattern, "$options": "i"}},
            {"sku": {"$regex": pattern, "$options": "i"}},
        ]
    if categoria_id:
        query["categoria_id"] = categoria_id
    elif categoria:
        cat = await db.db.estoque_categorias.find_one({"nome": categoria})
        if not cat:
            return []
        query["categoria_id"] = _public_id(cat)
    if ativo is not None:
        query["ativo"] = ativo

    saldos: Dict[str, float] = {}
    if com_estoque_local_id:
        rows = await db.db.estoque_saldos.find({"estoque_local_id": com_estoque_local_id}).to_list(length=None)
        saldos = {str(r.get("produto_id")): float(r.get("quantidade", 0)) for r in rows}
        if not saldos:
            return []

    produtos = await db.db.estoque_produtos.find(query).sort([("created_at", -1), ("_id", -1)]).to_list(length=None)
    if com_estoque_local_id:
        produtos = [p for p in produtos if _public_id(p) in saldos]

    out = await _com_categoria(produtos)
    if com_estoque_local_id:
        for item in out:
            item["estoque_saldos"] = [
                {"quantidade": saldos[item["id"]], "estoque_local_id": com_estoque_local_id}
            ]
    return out


async def obter_produto(produto_id: str) -> Dict[str, Any]:
    return (await _com_categoria([await _obter_produto(produto_id)]))[0]


async def criar_produto(dados: Dict[str, Any], usuario: Usuario, lancar_saldo_inicial: bool = True) -> Dict[str, Any]:
    if not (dados.get("nome") or "").strip():
        raise DadosInvalidos("Nome é obrigatório")
    quantidade_inicial = float(dados.get("quantidade_disponivel") or 0)
    if quantidade_inicial < 0:
        raise DadosInvalidos("Quantidade deve ser maior ou igual a zero")

    doc = {k: dados.get(k) for k in CAMPOS_PRODUTO if dados.get(k) is not None}
    doc.setdefault("ativo", True)
    doc.setdefault("estoque_minimo", 0)
    doc.update(await _resolver_categoria(dados.get("categoria_id"), dados.get("categoria")))
    doc["created_at"] = _now_utc()
    res = await db.db.estoque_produtos.insert_one(doc)
    pid = str(res.inserted_id)

    # Vincula o produto ao estoque central
    try:
        central = await obter_local_central()
    except ConfigurationError:
        logger.warning("Estoque central não encontrado; produto %s criado sem saldo", pid)
    else:
        cid = _public_id(central)
        await garantir_saldo(pid, cid)
        if lancar_saldo_inicial and quantidade_inicial > 0:
            await registrar_movimento(
                ENTRADA,
                pid,
                quantidade_inicial,
                usuario,
                destino_id=cid,
                referencia_tipo="produto",
                referencia_id=pid,
                observacao="Saldo inicial do cadastro",
            )

    logger.info("produto.criado", extra={"produto_id": pid, "categoria_id": doc.get("categoria_id")})
    return await obter_produto(pid)


async def atualizar_produto(produto_id: str, dados: Dict[str, Any]) -> Dict[str, Any]:
    existing = await _obter_produto(produto_id)
    update_data = {k: dados[k] for k in CAMPOS_PRODUTO if dados.get(k) is not None}
    if dados.get("categoria_id") or dados.get("categoria"):
        update_data.update(await _resolver_categoria(dados.get("categoria_id"), dados.get("categoria")))
    if not update_data:
        raise DadosInvalidos("Nada para atualizar")

    update_data["updated_at"] = _now_utc()
    await db.db.estoque_produtos.update_one({"_id": existing["_id"]}, {"$set": update_data})
    return await obter_produto(_public_id(existing))


async def desativar_produto(produto_id: str) -> Dict[str, Any]:
    # Produtos com histórico não são apagados
    existing = await _obter_produto(produto_id)
    await db.db.estoque_produtos.update_one(
        {"_id": existing["_id"]}, {"$set": {"ativo": False, "updated_at": _now_utc()}}
    )
    return serializar(await db.db.estoque_produtos.find_one({"_id": existing["_id"]}))


# --- Lojas ---

async def listar_lojas(usuario: Usuario) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {"ativo": {"$ne": False}}
    if not usuario.is_diretor:
        ids = sorted(usuario.lojas_vinculadas) if usuario.is_supervisor else []
        object_ids = [ObjectId(i) for i in ids if ObjectId.is_valid(i)]
        query["$or"] = [{"id": {"$in": ids}}, {"_id": {"$in": ids + object_ids}}]
    lojas = await db.db.lojas.find(query).sort("nome", 1).to_list(length=None)
    return [serializar(lj) for lj in lojas]
