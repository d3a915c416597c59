import pytest

from estoque_api.status import (
    STATUS_FLOW,
    STATUS_TERMINAIS,
    StatusSolicitacao,
    is_terminal,
    parse_status,
    pode_mudar_status,
    transicoes_permitidas,
)

TODOS = [s.value for s in StatusSolicitacao]


def test_fluxo_principal_avanca_um_passo_por_vez():
    caminho = [
        "solicitacao",
        "cotacao",
        "aguardando_oc",
        "em_producao",
        "pronto_para_retirar",
        "enviado_para_loja",
        "aplicado",
    ]
    for atual, proximo in zip(caminho, caminho[1:]):
        assert pode_mudar_status(atual, proximo)
        assert not pode_mudar_status(proximo, atual)


@pytest.mark.parametrize("atual", [s for s in TODOS if s not in ("aplicado", "cancelado")])
def test_cancelamento_permitido_em_qualquer_status_nao_terminal(atual):
    assert pode_mudar_status(atual, "cancelado")


@pytest.mark.parametrize("terminal", ["aplicado", "cancelado"])
def test_terminais_nao_permitem_nada(terminal):
    assert is_terminal(terminal)
    assert transicoes_permitidas(terminal) == frozenset()
    for destino in TODOS:
        assert not pode_mudar_status(terminal, destino)


def test_nenhum_status_permite_ir_para_si_mesmo():
    for status in TODOS:
        assert not pode_mudar_status(status, status)


def test_apenas_aplicado_e_cancelado_sao_terminais():
    assert {s.value for s in STATUS_TERMINAIS} == {"aplicado", "cancelado"}


def test_tabela_cobre_todos_os_status():
    assert set(STATUS_FLOW) == set(StatusSolicitacao)


def test_status_desconhecido():
    assert parse_status("aprovado") is None
    assert parse_status(None) is None
    assert transicoes_permitidas("aprovado") == frozenset()
    assert not pode_mudar_status("solicitacao", "aprovado")
    assert not pode_mudar_status("aprovado", "cancelado")
    assert not is_terminal("aprovado")


def test_parse_status_tolera_espacos():
    assert parse_status(" cotacao ") is StatusSolicitacao.COTACAO
