from fastapi import APIRouter, Form, HTTPException, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from ..database import get_db
from ..dependencies import get_current_user, require_admin
from ..models import User
from ..auth import authenticate_user, hash_password, create_access_token, ACCESS_TOKEN_EXPIRE_MINUTES
from ..schemas import UserCreate, UserOut, TokenOut

router = APIRouter(tags=["auth"])

@router.post("/setup", response_model=UserOut, status_code=201)
async def setup_admin(
    username: str = Form(...),
    full_name: str = Form(""),
    password: str = Form(...),
    db: Session = Depends(get_db)
):
    # Only the very first account can be created without logging in
    user_count = db.query(User).count()
    if user_count > 0:
        raise HTTPException(status_code=409, detail="Setup already completed")

    admin_user = User(
        username=username,
        hashed_password=hash_password(password),
        full_name=full_name if full_name else username,
        role="admin"
    )
    db.add(admin_user)
    db.commit()
    db.refresh(admin_user)
    return admin_user

@router.post("/auth/token", response_model=TokenOut)
async def login(
    username: str = Form(...),
    password: str = Form(...),
    db: Session = Depends(get_db)
):
    user = authenticate_user(db, username, password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid username or password")

    if not user.is_active:
        raise HTTPException(status_code=403, detail="Account is deactivated")

    token = create_access_token(user)

    # Browsers get the cookie, API clients use the bearer token from the body
    response = JSONResponse(content={"access_token": token, "token_type": "bearer"})
    response.set_cookie(
        key="access_token",
        value=token,
        httponly=True,
        secure=False,  # Set to True in production with HTTPS
        samesite="lax",
        path="/",
        max_age=ACCESS_TOKEN_EXPIRE_MINUTES * 60
    )
    return response

@router.post("/auth/logout")
async def logout():
    response = JSONResponse(content={"logged_out": True})
    response.delete_cookie(key="access_token", path="/")
    return response

@router.get("/auth/me", response_model=UserOut)
async def me(current_user: User = Depends(get_current_user)):
    return current_user

@router.post("/users", response_model=UserOut, status_code=201)
async def create_user(
    payload: UserCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin)
):
    # Check if username already exists
    existing_user = db.query(User).filter(User.username == payload.username).first()
    if existing_user:
        raise HTTPException(status_code=409, detail="Username already exists")

    user = User(
        username=payload.username,
        hashed_password=hash_password(payload.password),
        full_name=payload.full_name or payload.username,
        role=payload.role
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user
