"""
Sales CRM - Routes Auth
Login / Logout / Session / création d'utilisateurs (admin).
"""

from typing import List

from fastapi import APIRouter, HTTPException, Depends, Request
from pydantic import BaseModel
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from datetime import datetime, timezone, timedelta

from models import UserLogin, UserCreate, User
from config import hash_password, generate_token, new_id, now_iso, to_iso
from services.assignment_rotator import AssignmentRotator

router = APIRouter(prefix="/auth", tags=["Auth"])
security = HTTPBearer(auto_error=False)

SESSION_DAYS = 7


# ==================== HELPERS ====================

def get_db(request: Request):
    return request.app.state.db


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> User:
    """Récupère l'utilisateur connecté depuis le token."""
    if not credentials:
        raise HTTPException(status_code=401, detail="Non authentifié")

    db = get_db(request)
    session = await db.sessions.find_one({
        "token": credentials.credentials,
        "expires_at": {"$gt": now_iso()}
    })

    if not session:
        raise HTTPException(status_code=401, detail="Session expirée")

    user = await db.users.find_one(
        {"id": session["user_id"]},
        {"_id": 0, "password": 0}
    )

    if not user:
        raise HTTPException(status_code=401, detail="Utilisateur non trouvé")

    if user.get("is_active") is False:
        raise HTTPException(status_code=403, detail="Compte désactivé")

    return User(**user)


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Accès admin requis")
    return user


# ==================== LOGIN / LOGOUT ====================

@router.post("/login")
async def login(data: UserLogin, request: Request):
    """Connexion utilisateur."""
    db = get_db(request)
    user = await db.users.find_one(
        {"email": data.email.lower().strip()},
        {"_id": 0}
    )

    if not user or user.get("password") != hash_password(data.password):
        raise HTTPException(status_code=401, detail="Email ou mot de passe incorrect")

    if user.get("is_active") is False:
        raise HTTPException(status_code=403, detail="Compte désactivé")

    token = generate_token()
    await db.sessions.insert_one({
        "token": token,
        "user_id": user["id"],
        "created_at": now_iso(),
        "expires_at": to_iso(datetime.now(timezone.utc) + timedelta(days=SESSION_DAYS))
    })

    return {"token": token, "user": User(**user).model_dump()}


@router.post("/logout")
async def logout(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security)
):
    if credentials:
        await get_db(request).sessions.delete_one({"token": credentials.credentials})
    return {"success": True}


@router.get("/me")
async def me(user: User = Depends(get_current_user)):
    return user.model_dump()


# ==================== USERS (admin) ====================

@router.post("/users")
async def create_user(data: UserCreate, request: Request, admin: User = Depends(require_admin)):
    db = get_db(request)
    email = data.email.lower().strip()
    if await db.users.find_one({"email": email}, {"_id": 1}):
        raise HTTPException(status_code=400, detail="Email déjà utilisé")

    doc = {
        "id": new_id(),
        "email": email,
        "password": hash_password(data.password),
        "name": data.name,
        "role": data.role,
        "phone": data.phone or "",
        "is_active": True,
        "last_lead_assigned": None,
        "created_at": now_iso(),
        "created_by": admin.id,
    }
    await db.users.insert_one(dict(doc))
    return User(**doc).model_dump()


@router.get("/users")
async def list_users(request: Request, admin: User = Depends(require_admin)):
    docs = await get_db(request).users.find({}, {"_id": 0, "password": 0}).sort("name", 1).to_list(1000)
    return {"users": [User(**d).model_dump() for d in docs], "count": len(docs)}


@router.get("/users/rotation")
async def rotation_order(request: Request, admin: User = Depends(require_admin)):
    """Prochains employés dans l'ordre de rotation"""
    users = await AssignmentRotator(get_db(request)).peek_order()
    return {"users": [u.model_dump() for u in users], "count": len(users)}


# ==================== ME: NOTIFICATIONS / ACTIVITÉS ====================

class NotificationsRead(BaseModel):
    ids: List[str]


@router.get("/me/notifications")
async def my_notifications(request: Request, limit: int = 50, user: User = Depends(get_current_user)):
    items = await request.app.state.notifier.get_unread(user.id, limit)
    return {"notifications": [n.model_dump() for n in items], "count": len(items)}


@router.put("/me/notifications/read")
async def mark_notifications_read(data: NotificationsRead, request: Request,
                                  user: User = Depends(get_current_user)):
    updated = await request.app.state.notifier.mark_read(user.id, data.ids)
    return {"success": True, "updated": updated}


@router.get("/me/activities")
async def my_activities(request: Request, limit: int = 100, user: User = Depends(get_current_user)):
    items = await request.app.state.activities.list_for_user(user.id, limit)
    return {"activities": [a.model_dump() for a in items], "count": len(items)}
