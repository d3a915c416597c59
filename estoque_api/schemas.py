from typing import List, Optional

from pydantic import BaseModel, Field

# --- Modelos Pydantic (Validação automática) ---


class ProdutoCreate(BaseModel):
    nome: str = Field(min_length=1)
    sku: Optional[str] = None
    categoria_id: Optional[str] = None
    categoria: Optional[str] = None  # nome, mantido por compatibilidade
    quantidade_disponivel: float = Field(default=0, ge=0)
    ativo: bool = True
    estoque_minimo: int = Field(default=0, ge=0)
    imagem_url: Optional[str] = None
    image_1_url: Optional[str] = None
    image_2_url: Optional[str] = None
    image_3_url: Optional[str] = None
    imagem_capa_index: int = Field(default=1, ge=1, le=3)


class ProdutoUpdate(BaseModel):
    nome: Optional[str] = Field(default=None, min_length=1)
    sku: Optional[str] = None
    categoria_id: Optional[str] = None
    categoria: Optional[str] = None
    ativo: Optional[bool] = None
    estoque_minimo: Optional[int] = Field(default=None, ge=0)
    imagem_url: Optional[str] = None
    image_1_url: Optional[str] = None
    image_2_url: Optional[str] = None
    image_3_url: Optional[str] = None
    imagem_capa_index: Optional[int] = Field(default=None, ge=1, le=3)


class CategoriaCreate(BaseModel):
    nome: str = Field(min_length=1)
    descricao: Optional[str] = None
    ativo: bool = True


class CategoriaUpdate(BaseModel):
    nome: Optional[str] = Field(default=None, min_length=1)
    descricao: Optional[str] = None
    ativo: Optional[bool] = None


class EntradaRequest(BaseModel):
    produto_id: str
    quantidade: float = Field(gt=0)
    estoque_local_destino_id: str
    observacao: Optional[str] = None


class SaidaRequest(BaseModel):
    produto_id: str
    quantidade: float = Field(gt=0)
    estoque_local_origem_id: str
    observacao: Optional[str] = None


class TransferenciaRequest(BaseModel):
    produto_id: str
    quantidade: float = Field(gt=0)
    origem_id: str
    destino_id: str
    observacao: Optional[str] = None


class AjusteRequest(BaseModel):
    produto_id: str
    quantidade_nova: float = Field(ge=0)
    estoque_local_id: str
    motivo: str = Field(min_length=1)


class ItemSolicitacaoCreate(BaseModel):
    produto_id: str
    quantidade_solicitada: float = Field(gt=0)
    observacao_item: Optional[str] = None


class ItemSolicitacaoUpdate(BaseModel):
    quantidade_solicitada: Optional[float] = Field(default=None, gt=0)
    quantidade_aprovada: Optional[float] = Field(default=None, ge=0)
    quantidade_enviada: Optional[float] = Field(default=None, ge=0)
    observacao_item: Optional[str] = None


class SolicitacaoCreate(BaseModel):
    loja_id: str
    objetivo: Optional[str] = None
    observacoes: Optional[str] = None
    referencias: Optional[List[str]] = None  # URLs ou base64
    itens: List[ItemSolicitacaoCreate] = Field(min_length=1)


class SolicitacaoUpdate(BaseModel):
    objetivo: Optional[str] = None
    observacoes: Optional[str] = None
    referencias: Optional[List[str]] = None
    ativo: Optional[bool] = None


class StatusChange(BaseModel):
    status_novo: str
    motivo: Optional[str] = None


class ReprovarOCRequest(BaseModel):
    motivo: str = Field(min_length=1)


class ConfirmarRetiradaRequest(BaseModel):
    imagem_url: Optional[str] = None
    assinatura_url: Optional[str] = None
    observacao: Optional[str] = None


class ConfirmarEnvioRequest(BaseModel):
    tracking_code: Optional[str] = None
    imagem_url: Optional[str] = None
    observacao: Optional[str] = None


class ConfirmarAplicacaoRequest(BaseModel):
    imagem_url: Optional[str] = None
    observacao: Optional[str] = None

