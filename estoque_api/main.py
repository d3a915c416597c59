from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__, cadastros, ledger, solicitacoes
from .auth import Usuario, get_current_user, require_diretor
from .db import close, connect, db, settings
from .errors import EstoqueError
from .logger import configure_logging
from .schemas import (
    AjusteRequest,
    CategoriaCreate,
    CategoriaUpdate,
    ConfirmarAplicacaoRequest,
    ConfirmarEnvioRequest,
    ConfirmarRetiradaRequest,
    EntradaRequest,
    ItemSolicitacaoCreate,
    ItemSolicitacaoUpdate,
    ProdutoCreate,
    ProdutoUpdate,
    ReprovarOCRequest,
    SaidaRequest,
    SolicitacaoCreate,
    SolicitacaoUpdate,
    StatusChange,
    TransferenciaRequest,
)

logger = configure_logging(settings.LOG_LEVEL)

# Configuração
app = FastAPI(title="Estoque Marketing API", version=__version__)

# CORS (Permitir acesso do frontend)
allow_origins = [o.strip().rstrip("/") for o in settings.CORS_ALLOW_ORIGINS.split(",") if o.strip()] or ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_origin_regex=settings.CORS_ALLOW_ORIGIN_REGEX if allow_origins == ["*"] else None,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(EstoqueError)
async def estoque_error_handler(request: Request, exc: EstoqueError):
    if exc.status_code >= 500:
        logger.error("%s %s: %s", request.method, request.url.path, exc.message, extra={"code": exc.code})
    return JSONResponse(status_code=exc.status_code, content=exc.as_dict())


@app.on_event("startup")
async def startup_db_client():
    await connect()


@app.on_event("shutdown")
async def shutdown_db_client():
    await close()


@app.get("/health")
async def health():
    return {"status": "ok", "mock_db": db.is_mock}


# --- Usuário / Lojas / Locais ---

@app.get("/api/me")
async def get_me(user: Usuario = Depends(get_current_user)):
    return {
        "id": user.id,
        "user_ref": user.user_ref,
        "nome": user.nome,
        "email": user.email,
        "nivel": user.nivel,
        "lojas": await cadastros.listar_lojas(user),
    }


@app.get("/api/lojas")
async def get_lojas(user: Usuario = Depends(get_current_user)):
    return await cadastros.listar_lojas(user)


@app.get("/api/estoques/locais")
async def get_estoques_locais(user: Usuario = Depends(get_current_user)):
    return await ledger.listar_locais(user)


# --- Produtos ---

@app.get("/api/produtos")
async def get_produtos(
    search: Optional[str] = None,
    categoria_id: Optional[str] = None,
    categoria: Optional[str] = None,
    ativo: Optional[bool] = None,
    com_estoque_local_id: Optional[str] = Query(None, alias="comEstoqueLocalId"),
    user: Usuario = Depends(get_current_user),
):
    return await cadastros.listar_produtos(
        search=search,
        categoria_id=categoria_id,
        categoria=categoria,
        ativo=ativo,
        com_estoque_local_id=com_estoque_local_id,
    )


@app.post("/api/produtos/create-during-solicitacao", status_code=201)
async def create_produto_during_solicitacao(prod: ProdutoCreate, user: Usuario = Depends(get_current_user)):
    # Supervisores cadastram o produto sem saldo; entrada no central é do diretor
    return await cadastros.criar_produto(prod.model_dump(), user, lancar_saldo_inicial=user.is_diretor)


@app.post("/api/produtos", status_code=201)
async def create_produto(prod: ProdutoCreate, user: Usuario = Depends(require_diretor)):
    return await cadastros.criar_produto(prod.model_dump(), user)


@app.get("/api/produtos/{produto_id}")
async def get_produto(produto_id: str, user: Usuario = Depends(get_current_user)):
    return await cadastros.obter_produto(produto_id)


@app.put("/api/produtos/{produto_id}")
async def update_produto(produto_id: str, prod: ProdutoUpdate, user: Usuario = Depends(require_diretor)):
    return await cadastros.atualizar_produto(produto_id, prod.model_dump(exclude_unset=True))


@app.delete("/api/produtos/{produto_id}")
async def delete_produto(produto_id: str, user: Usuario = Depends(require_diretor)):
    return await cadastros.desativar_produto(produto_id)


# --- Categorias ---

@app.get("/api/categorias")
async def get_categorias(
    search: Optional[str] = None,
    ativo: Optional[bool] = None,
    user: Usuario = Depends(get_current_user),
):
    return await cadastros.listar_categorias(search=search, ativo=ativo)


@app.get("/api/categorias/{cat_id}")
async def get_categoria(cat_id: str, user: Usuario = Depends(get_current_user)):
    return await cadastros.obter_categoria(cat_id)


@app.post("/api/categorias", status_code=201)
async def create_categoria(cat: CategoriaCreate, user: Usuario = Depends(require_diretor)):
    return await cadastros.criar_categoria(cat.nome, descricao=cat.descricao, ativo=cat.ativo)


@app.put("/api/categorias/{cat_id}")
async def update_categoria(cat_id: str, cat: CategoriaUpdate, user: Usuario = Depends(require_diretor)):
    return await cadastros.atualizar_categoria(cat_id, cat.model_dump(exclude_unset=True))


@app.delete("/api/categorias/{cat_id}", status_code=204)
async def delete_categoria(cat_id: str, user: Usuario = Depends(require_diretor)):
    await cadastros.remover_categoria(cat_id)


# --- Estoque (Saldos e Movimentos) ---

@app.get("/api/estoque/saldos")
async def get_saldos(
    estoque_local_id: Optional[str] = None,
    produto_id: Optional[str] = None,
    categoria: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(settings.ITEMS_PER_PAGE, ge=1, le=settings.MAX_PER_PAGE),
    user: Usuario = Depends(get_current_user),
):
    return await ledger.listar_saldos(
        user,
        estoque_local_id=estoque_local_id,
        produto_id=produto_id,
        categoria=categoria,
        search=search,
        page=page,
        per_page=per_page,
    )


@app.get("/api/estoque/movimentos")
async def get_movimentos(
    produto_id: Optional[str] = None,
    estoque_local_id: Optional[str] = None,
    referencia_id: Optional[str] = None,
    referencia_tipo: Optional[str] = None,
    tipo: Optional[str] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(settings.ITEMS_PER_PAGE, ge=1, le=settings.MAX_PER_PAGE),
    user: Usuario = Depends(get_current_user),
):
    return await ledger.listar_movimentos(
        user,
        produto_id=produto_id,
        estoque_local_id=estoque_local_id,
        referencia_id=referencia_id,
        referencia_tipo=referencia_tipo,
        tipo=tipo,
        page=page,
        per_page=per_page,
    )


@app.post("/api/estoque/entrada", status_code=201)
async def entrada_estoque(req: EntradaRequest, user: Usuario = Depends(get_current_user)):
    return await ledger.registrar_movimento_manual(
        ledger.ENTRADA,
        req.produto_id,
        req.quantidade,
        user,
        destino_id=req.estoque_local_destino_id,
        observacao=req.observacao,
    )


@app.post("/api/estoque/saida", status_code=201)
async def saida_estoque(req: SaidaRequest, user: Usuario = Depends(get_current_user)):
    return await ledger.registrar_movimento_manual(
        ledger.SAIDA,
        req.produto_id,
        req.quantidade,
        user,
        origem_id=req.estoque_local_origem_id,
        observacao=req.observacao,
    )


@app.post("/api/estoque/transferencia", status_code=201)
async def transferencia_estoque(req: TransferenciaRequest, user: Usuario = Depends(get_current_user)):
    return await ledger.registrar_movimento_manual(
        ledger.TRANSFERENCIA,
        req.produto_id,
        req.quantidade,
        user,
        origem_id=req.origem_id,
        destino_id=req.destino_id,
        observacao=req.observacao,
    )


@app.post("/api/estoque/ajuste", status_code=201)
async def ajuste_estoque(req: AjusteRequest, user: Usuario = Depends(get_current_user)):
    return await ledger.ajustar_estoque(req.produto_id, req.estoque_local_id, req.quantidade_nova, req.motivo, user)


# --- Solicitações ---

@app.get("/api/solicitacoes")
async def get_solicitacoes(
    status: Optional[str] = None,
    loja_id: Optional[str] = None,
    search: Optional[str] = None,
    periodo_inicio: Optional[datetime] = None,
    periodo_fim: Optional[datetime] = None,
    ativo: Optional[str] = Query(None, description="true (padrão), false ou all"),
    page: int = Query(1, ge=1),
    per_page: int = Query(settings.ITEMS_PER_PAGE, ge=1, le=settings.MAX_PER_PAGE),
    user: Usuario = Depends(get_current_user),
):
    return await solicitacoes.listar_solicitacoes(
        user,
        status=status,
        loja_id=loja_id,
        search=search,
        periodo_inicio=periodo_inicio,
        periodo_fim=periodo_fim,
        ativo=ativo,
        page=page,
        per_page=per_page,
    )


@app.get("/api/solicitacoes/{solicitacao_id}")
async def get_solicitacao(solicitacao_id: str, user: Usuario = Depends(get_current_user)):
    return await solicitacoes.obter_solicitacao(solicitacao_id, user)


@app.post("/api/solicitacoes", status_code=201)
async def create_solicitacao(sol: SolicitacaoCreate, user: Usuario = Depends(get_current_user)):
    return await solicitacoes.criar_solicitacao(
        user,
        sol.loja_id,
        [it.model_dump() for it in sol.itens],
        objetivo=sol.objetivo,
        observacoes=sol.observacoes,
        referencias=sol.referencias,
    )


@app.put("/api/solicitacoes/{solicitacao_id}")
async def update_solicitacao(solicitacao_id: str, sol: SolicitacaoUpdate, user: Usuario = Depends(get_current_user)):
    return await solicitacoes.atualizar_solicitacao(solicitacao_id, sol.model_dump(exclude_unset=True), user)


@app.post("/api/solicitacoes/{solicitacao_id}/itens", status_code=201)
async def add_item_solicitacao(
    solicitacao_id: str,
    item: ItemSolicitacaoCreate,
    user: Usuario = Depends(get_current_user),
):
    return await solicitacoes.adicionar_item(
        solicitacao_id,
        item.produto_id,
        item.quantidade_solicitada,
        user,
        observacao_item=item.observacao_item,
    )


@app.put("/api/solicitacoes/{solicitacao_id}/itens/{item_id}")
async def update_item_solicitacao(
    solicitacao_id: str,
    item_id: str,
    item: ItemSolicitacaoUpdate,
    user: Usuario = Depends(get_current_user),
):
    return await solicitacoes.atualizar_item(solicitacao_id, item_id, item.model_dump(exclude_unset=True), user)


@app.delete("/api/solicitacoes/{solicitacao_id}/itens/{item_id}", status_code=204)
async def delete_item_solicitacao(solicitacao_id: str, item_id: str, user: Usuario = Depends(get_current_user)):
    await solicitacoes.remover_item(solicitacao_id, item_id, user)


@app.post("/api/solicitacoes/{solicitacao_id}/status")
async def change_status(solicitacao_id: str, req: StatusChange, user: Usuario = Depends(get_current_user)):
    return await solicitacoes.change_status(solicitacao_id, req.status_novo, user, motivo=req.motivo)


@app.post("/api/solicitacoes/{solicitacao_id}/aprovar-oc")
async def aprovar_oc(solicitacao_id: str, user: Usuario = Depends(require_diretor)):
    return await solicitacoes.aprovar_oc(solicitacao_id, user)


@app.post("/api/solicitacoes/{solicitacao_id}/reprovar-oc")
async def reprovar_oc(solicitacao_id: str, req: ReprovarOCRequest, user: Usuario = Depends(require_diretor)):
    return await solicitacoes.reprovar_oc(solicitacao_id, req.motivo, user)


@app.post("/api/solicitacoes/{solicitacao_id}/confirmar-retirada", status_code=201)
async def confirmar_retirada(
    solicitacao_id: str,
    req: ConfirmarRetiradaRequest,
    user: Usuario = Depends(get_current_user),
):
    return await solicitacoes.registrar_comprovante(solicitacao_id, "retirada", user, **req.model_dump())


@app.post("/api/solicitacoes/{solicitacao_id}/confirmar-envio", status_code=201)
async def confirmar_envio(
    solicitacao_id: str,
    req: ConfirmarEnvioRequest,
    user: Usuario = Depends(require_diretor),
):
    return await solicitacoes.registrar_comprovante(solicitacao_id, "envio", user, **req.model_dump())


@app.post("/api/solicitacoes/{solicitacao_id}/confirmar-aplicacao", status_code=201)
async def confirmar_aplicacao(
    solicitacao_id: str,
    req: ConfirmarAplicacaoRequest,
    user: Usuario = Depends(get_current_user),
):
    return await solicitacoes.registrar_comprovante(solicitacao_id, "aplicacao", user, **req.model_dump())


@app.get("/api/solicitacoes/{solicitacao_id}/logs")
async def get_logs(solicitacao_id: str, user: Usuario = Depends(get_current_user)):
    return await solicitacoes.listar_logs(solicitacao_id, user)


# --- Alertas ---

@app.get("/api/alertas")
async def get_alertas(user: Usuario = Depends(get_current_user)):
    return await solicitacoes.listar_alertas(user)
