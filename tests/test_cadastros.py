import asyncio

import pytest

from estoque_api import cadastros
from estoque_api.db import db
from estoque_api.errors import DadosInvalidos, NotFound


def test_criar_produto_vincula_ao_central_e_lanca_saldo_inicial(cenario, saldo):
    prod = asyncio.run(
        cadastros.criar_produto(
            {"nome": "Totem", "sku": "TOT-001", "categoria": "Banners", "quantidade_disponivel": 12},
            cenario.diretor,
        )
    )

    assert prod["categoria_id"] == cenario.categoria
    assert prod["categoria"]["nome"] == "Banners"
    assert prod["ativo"] is True
    assert saldo(prod["id"], cenario.central) == 12.0
    movs = asyncio.run(db.db.estoque_movimentos.find({"produto_id": prod["id"]}).to_list(length=None))
    assert [m["tipo"] for m in movs] == ["entrada"]


def test_criar_produto_sem_quantidade_cria_saldo_zerado(cenario, saldo):
    prod = asyncio.run(
        cadastros.criar_produto({"nome": "Wobbler", "categoria_id": cenario.categoria}, cenario.supervisor, False)
    )

    row = asyncio.run(db.db.estoque_saldos.find_one({"produto_id": prod["id"], "estoque_local_id": cenario.central}))
    assert row is not None
    assert saldo(prod["id"], cenario.central) == 0.0
    assert asyncio.run(db.db.estoque_movimentos.count_documents({})) == 0


def test_criar_produto_exige_categoria_existente(cenario):
    with pytest.raises(DadosInvalidos):
        asyncio.run(cadastros.criar_produto({"nome": "Totem"}, cenario.diretor))
    with pytest.raises(DadosInvalidos):
        asyncio.run(cadastros.criar_produto({"nome": "Totem", "categoria": "Inexistente"}, cenario.diretor))


def test_listar_e_desativar_produtos(cenario, saldo):
    saldo(cenario.p1, cenario.local_a, 3)

    assert len(asyncio.run(cadastros.listar_produtos())) == 3
    assert [p["sku"] for p in asyncio.run(cadastros.listar_produtos(search="dis"))] == ["DIS-001"]
    assert asyncio.run(cadastros.listar_produtos(categoria="Outra")) == []

    com_saldo = asyncio.run(cadastros.listar_produtos(com_estoque_local_id=cenario.local_a))
    assert [p["id"] for p in com_saldo] == [cenario.p1]
    assert com_saldo[0]["estoque_saldos"] == [{"quantidade": 3.0, "estoque_local_id": cenario.local_a}]

    removido = asyncio.run(cadastros.desativar_produto(cenario.p2))
    assert removido["ativo"] is False
    assert len(asyncio.run(cadastros.listar_produtos(ativo=True))) == 2
    # Desativar não apaga o registro
    assert asyncio.run(cadastros.obter_produto(cenario.p2))["nome"] == "Adesivo vitrine"


def test_atualizar_produto_troca_categoria(cenario):
    nova = asyncio.run(cadastros.criar_categoria("Adesivos"))
    prod = asyncio.run(cadastros.atualizar_produto(cenario.p2, {"categoria_id": nova["id"], "estoque_minimo": 5}))
    assert prod["categoria"]["nome"] == "Adesivos"
    assert prod["estoque_minimo"] == 5

    with pytest.raises(NotFound):
        asyncio.run(cadastros.atualizar_produto("nao-existe", {"nome": "X"}))


def test_categoria_com_nome_duplicado(cenario):
    with pytest.raises(DadosInvalidos):
        asyncio.run(cadastros.criar_categoria("banners"))

    outra = asyncio.run(cadastros.criar_categoria("Displays", descricao="Peças de balcão"))
    with pytest.raises(DadosInvalidos):
        asyncio.run(cadastros.atualizar_categoria(outra["id"], {"nome": "BANNERS"}))

    atualizada = asyncio.run(cadastros.atualizar_categoria(outra["id"], {"nome": "Displays", "ativo": False}))
    assert atualizada["ativo"] is False


def test_renomear_categoria_atualiza_os_produtos(cenario):
    asyncio.run(cadastros.atualizar_categoria(cenario.categoria, {"nome": "Lonas"}))
    prod = asyncio.run(db.db.estoque_produtos.find_one({"sku": "BAN-001"}))
    assert prod["categoria"] == "Lonas"


def test_remover_categoria_com_produtos_e_bloqueado(cenario):
    with pytest.raises(DadosInvalidos):
        asyncio.run(cadastros.remover_categoria(cenario.categoria))

    vazia = asyncio.run(cadastros.criar_categoria("Brindes"))
    asyncio.run(cadastros.remover_categoria(vazia["id"]))
    with pytest.raises(NotFound):
        asyncio.run(cadastros.obter_categoria(vazia["id"]))

    nomes = [c["nome"] for c in asyncio.run(cadastros.listar_categorias())]
    assert nomes == ["Banners"]


def test_lojas_visiveis(cenario):
    assert [lj["nome"] for lj in asyncio.run(cadastros.listar_lojas(cenario.supervisor))] == ["Loja Centro"]
    assert [lj["nome"] for lj in asyncio.run(cadastros.listar_lojas(cenario.diretor))] == ["Loja Centro", "Loja Praia"]
