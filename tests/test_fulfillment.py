import asyncio
import logging

import pytest
from bson import ObjectId

from estoque_api import solicitacoes
from estoque_api.db import db
from estoque_api.errors import ConfigurationError
from estoque_api.fulfillment import aplicar_efeitos_estoque, resolver_quantidade


def _movimentos(**query):
    async def _run():
        return await db.db.estoque_movimentos.find(query).to_list(length=None)

    return asyncio.run(_run())


def _solicitacao(sid):
    async def _run():
        return await db.db.estoque_solicitacoes.find_one({"_id": ObjectId(sid)})

    return asyncio.run(_run())


@pytest.mark.parametrize(
    "item,status,esperado",
    [
        ({"quantidade_solicitada": 10, "quantidade_aprovada": None, "quantidade_enviada": None}, "enviado_para_loja", 10.0),
        ({"quantidade_solicitada": 10, "quantidade_aprovada": 8, "quantidade_enviada": None}, "enviado_para_loja", 8.0),
        ({"quantidade_solicitada": 10, "quantidade_aprovada": 8, "quantidade_enviada": 6}, "aplicado", 6.0),
        ({"quantidade_solicitada": 10, "quantidade_aprovada": 8, "quantidade_enviada": 6}, "pronto_para_retirar", 8.0),
        ({"quantidade_solicitada": 3, "quantidade_aprovada": 0, "quantidade_enviada": None}, "pronto_para_retirar", 0.0),
        ({"quantidade_solicitada": 3}, "pronto_para_retirar", 3.0),
        ({"quantidade_solicitada": 10, "quantidade_aprovada": 5, "quantidade_enviada": 0}, "aplicado", 5.0),
        ({"quantidade_solicitada": 10, "quantidade_aprovada": 5, "quantidade_enviada": 0}, "enviado_para_loja", 5.0),
        ({"quantidade_solicitada": 10, "quantidade_aprovada": 0, "quantidade_enviada": None}, "enviado_para_loja", 10.0),
        ({"quantidade_solicitada": 0, "quantidade_aprovada": 0, "quantidade_enviada": 0}, "aplicado", 0.0),
        ({}, "aplicado", 0.0),
        ({"quantidade_solicitada": 3}, "cotacao", 0.0),
    ],
)
def test_precedencia_das_quantidades(item, status, esperado):
    assert resolver_quantidade(item, status) == esperado


def test_pronto_para_retirar_gera_uma_entrada_por_item(cenario, nova_solicitacao, saldo):
    sid = nova_solicitacao(
        cenario.loja_a,
        status="em_producao",
        itens=[
            {"produto_id": cenario.p1, "quantidade_solicitada": 2},
            {"produto_id": cenario.p2, "quantidade_solicitada": 3},
            {"produto_id": cenario.p3, "quantidade_solicitada": 4},
        ],
    )

    asyncio.run(solicitacoes.change_status(sid, "pronto_para_retirar", cenario.diretor))

    movs = _movimentos(referencia_id=sid)
    assert len(movs) == 3
    assert {m["tipo"] for m in movs} == {"entrada"}
    assert {m["referencia_tipo"] for m in movs} == {"solicitacao"}
    assert {m["estoque_local_destino_id"] for m in movs} == {cenario.central}
    assert all(f"Solicitação {sid}" in m["observacao"] for m in movs)
    assert saldo(cenario.p1, cenario.central) == 2.0
    assert saldo(cenario.p2, cenario.central) == 3.0
    assert saldo(cenario.p3, cenario.central) == 4.0


def test_item_aprovado_com_zero_e_ignorado(cenario, nova_solicitacao, saldo):
    sid = nova_solicitacao(
        cenario.loja_a,
        status="em_producao",
        itens=[
            {"produto_id": cenario.p1, "quantidade_solicitada": 5, "quantidade_aprovada": 5},
            {"produto_id": cenario.p2, "quantidade_solicitada": 3, "quantidade_aprovada": 0},
        ],
    )

    res = asyncio.run(solicitacoes.change_status(sid, "pronto_para_retirar", cenario.diretor))

    assert res["status"] == "pronto_para_retirar"
    assert _solicitacao(sid)["status"] == "pronto_para_retirar"
    movs = _movimentos(referencia_id=sid)
    assert len(movs) == 1
    assert movs[0]["produto_id"] == cenario.p1
    assert movs[0]["quantidade"] == 5.0
    assert movs[0]["tipo"] == "entrada"
    assert saldo(cenario.p2, cenario.central) == 0.0


def test_envio_transfere_do_central_para_a_loja(cenario, nova_solicitacao, saldo):
    saldo(cenario.p1, cenario.central, 10)
    sid = nova_solicitacao(
        cenario.loja_a,
        status="pronto_para_retirar",
        itens=[{"produto_id": cenario.p1, "quantidade_solicitada": 6, "quantidade_aprovada": 4}],
    )

    asyncio.run(solicitacoes.change_status(sid, "enviado_para_loja", cenario.diretor))

    assert saldo(cenario.p1, cenario.central) == 6.0
    assert saldo(cenario.p1, cenario.local_a) == 4.0
    movs = _movimentos(referencia_id=sid)
    assert len(movs) == 1
    assert movs[0]["tipo"] == "transferencia"
    assert movs[0]["estoque_local_origem_id"] == cenario.central
    assert movs[0]["estoque_local_destino_id"] == cenario.local_a

    asyncio.run(solicitacoes.change_status(sid, "aplicado", cenario.diretor))

    assert saldo(cenario.p1, cenario.local_a) == 0.0
    saida = _movimentos(referencia_id=sid, tipo="saida")
    assert len(saida) == 1
    assert saida[0]["estoque_local_origem_id"] == cenario.local_a
    assert "Baixa definitiva" in saida[0]["observacao"]


def test_aplicacao_com_enviada_zerada_baixa_a_quantidade_aprovada(cenario, nova_solicitacao, saldo):
    saldo(cenario.p1, cenario.local_a, 8)
    sid = nova_solicitacao(
        cenario.loja_a,
        status="enviado_para_loja",
        itens=[{"produto_id": cenario.p1, "quantidade_solicitada": 10, "quantidade_aprovada": 5, "quantidade_enviada": 0}],
    )

    asyncio.run(solicitacoes.change_status(sid, "aplicado", cenario.diretor))

    movs = _movimentos(referencia_id=sid)
    assert len(movs) == 1
    assert movs[0]["tipo"] == "saida"
    assert movs[0]["quantidade"] == 5.0
    assert saldo(cenario.p1, cenario.local_a) == 3.0


def test_falha_em_um_item_nao_impede_os_demais(cenario, nova_solicitacao, saldo, caplog):
    saldo(cenario.p1, cenario.central, 10)
    sid = nova_solicitacao(
        cenario.loja_a,
        status="pronto_para_retirar",
        itens=[
            {"produto_id": cenario.p1, "quantidade_solicitada": 4},
            {"produto_id": cenario.p2, "quantidade_solicitada": 2},
        ],
    )

    with caplog.at_level(logging.ERROR, logger="estoque_api.fulfillment"):
        asyncio.run(solicitacoes.change_status(sid, "enviado_para_loja", cenario.diretor))

    assert _solicitacao(sid)["status"] == "enviado_para_loja"
    assert saldo(cenario.p1, cenario.local_a) == 4.0
    assert saldo(cenario.p2, cenario.central) == 0.0
    assert len(_movimentos(referencia_id=sid)) == 1
    assert any("transferencia" in r.getMessage() and cenario.p2 in r.getMessage() for r in caplog.records)


def test_relatorio_da_integracao(cenario, nova_solicitacao, saldo):
    saldo(cenario.p1, cenario.central, 10)
    sid = nova_solicitacao(
        cenario.loja_a,
        status="enviado_para_loja",
        itens=[
            {"produto_id": cenario.p1, "quantidade_solicitada": 4},
            {"produto_id": cenario.p2, "quantidade_solicitada": 2},
            {"produto_id": cenario.p3, "quantidade_solicitada": 0, "quantidade_aprovada": 0},
        ],
    )

    relatorio = asyncio.run(aplicar_efeitos_estoque(_solicitacao(sid), "enviado_para_loja", cenario.diretor))

    assert relatorio.tipo_movimento == "transferencia"
    assert relatorio.origem_id == cenario.central
    assert relatorio.destino_id == cenario.local_a
    assert [r.produto_id for r in relatorio.lancados] == [cenario.p1]
    assert [r.produto_id for r in relatorio.falhas] == [cenario.p2]
    assert [r.produto_id for r in relatorio.ignorados] == [cenario.p3]
    assert relatorio.lancados[0].movimento_id is not None
    assert "Saldo insuficiente" in relatorio.falhas[0].erro


def test_status_sem_integracao_nao_movimenta(cenario, nova_solicitacao):
    sid = nova_solicitacao(cenario.loja_a, itens=[{"produto_id": cenario.p1, "quantidade_solicitada": 4}])
    assert asyncio.run(aplicar_efeitos_estoque(_solicitacao(sid), "cotacao", cenario.diretor)) is None
    asyncio.run(solicitacoes.change_status(sid, "cotacao", cenario.diretor))
    assert _movimentos() == []


def test_sem_estoque_central_o_status_e_gravado_e_o_erro_registrado(cenario, nova_solicitacao, caplog):
    asyncio.run(db.db.estoque_locais.delete_one({"_id": ObjectId(cenario.central)}))
    sid = nova_solicitacao(
        cenario.loja_a,
        status="em_producao",
        itens=[{"produto_id": cenario.p1, "quantidade_solicitada": 5}],
    )

    with caplog.at_level(logging.ERROR, logger="estoque_api.solicitacoes"):
        res = asyncio.run(solicitacoes.change_status(sid, "pronto_para_retirar", cenario.diretor))

    assert res["status"] == "pronto_para_retirar"
    assert _solicitacao(sid)["status"] == "pronto_para_retirar"
    assert _movimentos() == []
    assert any("Estoque central não encontrado" in r.getMessage() for r in caplog.records)


def test_sem_estoque_da_loja_a_integracao_inteira_e_abortada(cenario, nova_solicitacao, saldo):
    saldo(cenario.p1, cenario.central, 10)
    asyncio.run(db.db.estoque_locais.delete_one({"_id": ObjectId(cenario.local_a)}))
    sid = nova_solicitacao(
        cenario.loja_a,
        status="enviado_para_loja",
        itens=[{"produto_id": cenario.p1, "quantidade_solicitada": 5}],
    )

    with pytest.raises(ConfigurationError):
        asyncio.run(aplicar_efeitos_estoque(_solicitacao(sid), "enviado_para_loja", cenario.diretor))

    assert saldo(cenario.p1, cenario.central) == 10.0
    assert _movimentos() == []
