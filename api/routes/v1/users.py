"""
api/routes/v1/users.py -- Account management REST endpoints (admin only).

Routes:
  POST   /api/v1/auth/users        -- create account
  GET    /api/v1/auth/users        -- list all accounts
  GET    /api/v1/auth/users/{id}   -- one account
  PATCH  /api/v1/auth/users/{id}   -- change role and/or lock/unlock
  DELETE /api/v1/auth/users/{id}   -- soft delete

Locking and deleting end the target's live session immediately; its client
learns why on the next visit to the login boundary. Rank rules (no self
management, ADMIN manages USER, SUPER_ADMIN manages all) live in
auth/admin.py, shared with the management CLI.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import AccountCreate, AccountPatch, AccountResponse, StatusEnum
from auth.admin import AccountAdmin
from auth.dependencies import require_admin
from auth.models import Account, Role

router = APIRouter()


def _admin(request: Request) -> AccountAdmin:
    return request.app.state.admin


@router.post("/auth/users", response_model=AccountResponse, status_code=201)
def create_account(
    request: Request,
    body: AccountCreate,
    current: Account = Depends(require_admin),
) -> AccountResponse:
    """Pre-create an account. Password may be omitted for provider-only accounts."""
    account = _admin(request).create(body.username, body.password, Role(body.role.value), actor=current)
    return AccountResponse.from_account(account)


@router.get("/auth/users", response_model=list[AccountResponse])
def list_accounts(
    request: Request,
    current: Account = Depends(require_admin),
) -> list[AccountResponse]:
    return [AccountResponse.from_account(a) for a in request.app.state.store.list_accounts()]


@router.get("/auth/users/{account_id}", response_model=AccountResponse)
def get_account(
    request: Request,
    account_id: int,
    current: Account = Depends(require_admin),
) -> AccountResponse:
    return AccountResponse.from_account(_admin(request).get(account_id))


@router.patch("/auth/users/{account_id}", response_model=AccountResponse)
def update_account(
    request: Request,
    account_id: int,
    body: AccountPatch,
    current: Account = Depends(require_admin),
) -> AccountResponse:
    """Change role and/or status. Locking invalidates the target's session."""
    if body.role is None and body.status is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    admin = _admin(request)
    account = admin.get(account_id)
    if body.role is not None:
        account = admin.set_role(account_id, Role(body.role.value), actor=current)
    if body.status is StatusEnum.locked:
        account = admin.lock(account_id, actor=current)
    elif body.status is StatusEnum.active:
        account = admin.unlock(account_id, actor=current)
    return AccountResponse.from_account(account)


@router.delete("/auth/users/{account_id}", response_model=AccountResponse)
def delete_account(
    request: Request,
    account_id: int,
    current: Account = Depends(require_admin),
) -> AccountResponse:
    """Soft delete. The row stays so the user's next login reports the deletion."""
    return AccountResponse.from_account(_admin(request).delete(account_id, actor=current))
