"""
Contexto do usuário autenticado e filtro de escopo por loja.

A autenticação é feita pelo provedor de identidade externo; a API recebe o
identificador do usuário no header X-User-Id e resolve o perfil em
users_regras. O contexto resultante (Usuario) é passado explicitamente para
todas as operações de serviço.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional

from fastapi import Depends, Header, HTTPException

from .db import _build_id_query, _public_id, db
from .errors import Forbidden

NIVEL_DIRETOR = "diretor"
NIVEL_SUPERVISOR = "supervisor"
NIVEIS_VALIDOS = (NIVEL_DIRETOR, NIVEL_SUPERVISOR)

LOCAL_CENTRAL = "central"
LOCAL_LOJA = "loja"


@dataclass(frozen=True)
class Usuario:
    id: str
    nivel: str
    user_ref: Optional[str] = None
    nome: Optional[str] = None
    email: Optional[str] = None
    lojas_vinculadas: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def is_diretor(self) -> bool:
        return self.nivel == NIVEL_DIRETOR

    @property
    def is_supervisor(self) -> bool:
        return self.nivel == NIVEL_SUPERVISOR

    @property
    def ator(self) -> str:
        """Identificador gravado em created_by / alterado_por."""
        return self.user_ref or self.id


async def _lojas_do_usuario(user_regra_id: str) -> FrozenSet[str]:
    vinculos = await db.db.users_regras_lojas.find({"user_regra_id": user_regra_id}).to_list(length=None)
    return frozenset(str(v.get("loja_id")) for v in vinculos if v.get("loja_id") is not None)


async def get_current_user(x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")) -> Usuario:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Usuário não autenticado")

    query = _build_id_query(x_user_id)
    query["$or"].append({"user_ref": x_user_id})
    regra = await db.db.users_regras.find_one(query)
    if not regra or not regra.get("ativo", True):
        raise HTTPException(status_code=403, detail="Usuário não encontrado no sistema")

    nivel = (regra.get("nivel") or "").strip().lower()
    if nivel not in NIVEIS_VALIDOS:
        raise HTTPException(status_code=403, detail="Acesso negado")

    regra_id = _public_id(regra)
    lojas: FrozenSet[str] = frozenset()
    if nivel == NIVEL_SUPERVISOR:
        lojas = await _lojas_do_usuario(regra_id)

    return Usuario(
        id=regra_id,
        nivel=nivel,
        user_ref=regra.get("user_ref"),
        nome=regra.get("nome"),
        email=regra.get("email"),
        lojas_vinculadas=lojas,
    )


async def require_diretor(user: Usuario = Depends(get_current_user)) -> Usuario:
    if not user.is_diretor:
        raise HTTPException(status_code=403, detail="Acesso negado. Apenas diretores.")
    return user


# --- Escopo por loja ---

def pode_acessar_loja(usuario: Usuario, loja_id: Any) -> bool:
    if usuario.is_diretor:
        return True
    if usuario.is_supervisor:
        return loja_id is not None and str(loja_id) in usuario.lojas_vinculadas
    return False


def garantir_acesso_loja(usuario: Usuario, loja_id: Any, mensagem: str = "Acesso negado") -> None:
    if not pode_acessar_loja(usuario, loja_id):
        raise Forbidden(mensagem, loja_id=loja_id)


def filtro_lojas(usuario: Usuario, campo: str = "loja_id") -> Dict[str, Any]:
    """Fragmento de query que restringe listagens às lojas do usuário."""
    if usuario.is_diretor:
        return {}
    if usuario.is_supervisor:
        return {campo: {"$in": sorted(usuario.lojas_vinculadas)}}
    return {campo: {"$in": []}}


def pode_ler_local(usuario: Usuario, local: Dict[str, Any]) -> bool:
    if usuario.is_diretor:
        return True
    if not usuario.is_supervisor:
        return False
    if local.get("tipo") == LOCAL_CENTRAL:
        return True
    return pode_acessar_loja(usuario, local.get("loja_id"))


def pode_movimentar_local(usuario: Usuario, local: Dict[str, Any]) -> bool:
    # O central não pertence a nenhuma loja: só o diretor lança nele.
    if usuario.is_diretor:
        return True
    if local.get("tipo") != LOCAL_LOJA:
        return False
    return pode_acessar_loja(usuario, local.get("loja_id"))


def garantir_acesso_local(usuario: Usuario, local: Dict[str, Any], escrita: bool = False) -> None:
    permitido = pode_movimentar_local(usuario, local) if escrita else pode_ler_local(usuario, local)
    if not permitido:
        raise Forbidden("Acesso negado a este estoque", estoque_local_id=_public_id(local))


def filtro_locais_visiveis(usuario: Usuario) -> Dict[str, Any]:
    if usuario.is_diretor:
        return {}
    if usuario.is_supervisor:
        return {"$or": [{"tipo": LOCAL_CENTRAL}, {"loja_id": {"$in": sorted(usuario.lojas_vinculadas)}}]}
    return {"_id": {"$in": []}}


async def locais_visiveis(usuario: Usuario) -> Optional[List[str]]:
    """Ids dos locais visíveis ao usuário; None quando não há restrição."""
    if usuario.is_diretor:
        return None
    if not usuario.is_supervisor:
        return []
    locais = await db.db.estoque_locais.find(filtro_locais_visiveis(usuario)).to_list(length=None)
    return [_public_id(loc) for loc in locais]
