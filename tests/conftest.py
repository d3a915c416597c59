import asyncio
from types import SimpleNamespace

import pytest
from bson import ObjectId

from estoque_api.auth import Usuario
from estoque_api.db import _now_utc, db, use_mock_database


@pytest.fixture(autouse=True)
def mock_db():
    use_mock_database()
    yield db


@pytest.fixture
def cenario(mock_db):
    """Duas lojas (A e B), estoque central, estoques das lojas, três produtos,
    um diretor e um supervisor da loja A."""
    now = _now_utc()
    loja_a, loja_b = ObjectId(), ObjectId()
    central, local_a, local_b = ObjectId(), ObjectId(), ObjectId()
    categoria = ObjectId()
    p1, p2, p3 = ObjectId(), ObjectId(), ObjectId()
    diretor_id, supervisor_id = ObjectId(), ObjectId()

    async def _seed():
        await db.db.lojas.insert_many([
            {"_id": loja_a, "nome": "Loja Centro", "cidade": "Natal", "estado": "RN", "ativo": True},
            {"_id": loja_b, "nome": "Loja Praia", "cidade": "Natal", "estado": "RN", "ativo": True},
        ])
        await db.db.estoque_locais.insert_many([
            {"_id": central, "tipo": "central", "loja_id": None, "nome": "Estoque Central"},
            {"_id": local_a, "tipo": "loja", "loja_id": str(loja_a), "nome": "Estoque Loja Centro"},
            {"_id": local_b, "tipo": "loja", "loja_id": str(loja_b), "nome": "Estoque Loja Praia"},
        ])
        await db.db.estoque_categorias.insert_one({"_id": categoria, "nome": "Banners", "ativo": True})
        await db.db.estoque_produtos.insert_many([
            {"_id": p1, "nome": "Banner 1x2m", "sku": "BAN-001", "categoria_id": str(categoria), "ativo": True, "created_at": now},
            {"_id": p2, "nome": "Adesivo vitrine", "sku": "ADE-001", "categoria_id": str(categoria), "ativo": True, "created_at": now},
            {"_id": p3, "nome": "Display balcão", "sku": "DIS-001", "categoria_id": str(categoria), "ativo": True, "created_at": now},
        ])
        await db.db.users_regras.insert_many([
            {"_id": diretor_id, "user_ref": "dir-1", "nome": "Diretora", "email": "dir@loja.com", "nivel": "diretor", "ativo": True},
            {"_id": supervisor_id, "user_ref": "sup-a", "nome": "Supervisor A", "email": "supa@loja.com", "nivel": "supervisor", "ativo": True},
        ])
        await db.db.users_regras_lojas.insert_one({"user_regra_id": str(supervisor_id), "loja_id": str(loja_a)})

    asyncio.run(_seed())

    return SimpleNamespace(
        loja_a=str(loja_a),
        loja_b=str(loja_b),
        central=str(central),
        local_a=str(local_a),
        local_b=str(local_b),
        categoria=str(categoria),
        p1=str(p1),
        p2=str(p2),
        p3=str(p3),
        diretor=Usuario(id=str(diretor_id), nivel="diretor", user_ref="dir-1", nome="Diretora"),
        supervisor=Usuario(
            id=str(supervisor_id),
            nivel="supervisor",
            user_ref="sup-a",
            nome="Supervisor A",
            lojas_vinculadas=frozenset({str(loja_a)}),
        ),
    )


@pytest.fixture
def nova_solicitacao(mock_db):
    """Grava uma solicitação já no status desejado, com os itens informados."""

    def _criar(loja_id, status="solicitacao", itens=(), ativo=True):
        now = _now_utc()
        sid = ObjectId()

        async def _seed():
            await db.db.estoque_solicitacoes.insert_one({
                "_id": sid,
                "loja_id": loja_id,
                "objetivo": "Campanha de inverno",
                "status": status,
                "supervisor_id": "sup-a",
                "criado_por": "sup-a",
                "referencias": [],
                "ativo": ativo,
                "created_at": now,
                "updated_at": now,
            })
            for item in itens:
                await db.db.estoque_solicitacao_itens.insert_one({
                    "solicitacao_id": str(sid),
                    "quantidade_aprovada": None,
                    "quantidade_enviada": None,
                    **item,
                })

        asyncio.run(_seed())
        return str(sid)

    return _criar


@pytest.fixture
def saldo(mock_db):
    def _saldo(produto_id, local_id, quantidade=None):
        async def _run():
            if quantidade is not None:
                await db.db.estoque_saldos.update_one(
                    {"produto_id": produto_id, "estoque_local_id": local_id},
                    {"$set": {"quantidade": float(quantidade), "updated_at": _now_utc()}},
                    upsert=True,
                )
            doc = await db.db.estoque_saldos.find_one({"produto_id": produto_id, "estoque_local_id": local_id})
            return float(doc.get("quantidade", 0)) if doc else 0.0

        return asyncio.run(_run())

    return _saldo
