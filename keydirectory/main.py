from contextlib import asynccontextmanager
from typing import List

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from . import models
from .db import get_db, init_db


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Initialize database schema at startup.
    init_db()
    yield


app = FastAPI(title="keyseal key directory", version="0.1", lifespan=lifespan)


class UserIn(BaseModel):
    name: str
    public_keys: List[str]


class GroupIn(BaseModel):
    name: str
    members: List[str]


class GroupOut(BaseModel):
    name: str
    members: List[str]


def _unique_lines(lines: List[str]) -> List[str]:
    seen = []
    for line in lines:
        line = line.strip()
        if line and line not in seen:
            seen.append(line)
    return seen


@app.post("/users")
def register_user(payload: UserIn, db: Session = Depends(get_db)):
    existing = db.query(models.User).filter(models.User.name == payload.name).first()
    if existing:
        raise HTTPException(status_code=400, detail="User already registered")
    db.add(models.User(name=payload.name))
    for line in _unique_lines(payload.public_keys):
        db.add(models.PublicKey(user_name=payload.name, key_line=line))
    db.commit()
    return {"status": "registered", "user": payload.name}


@app.get("/users/{name}/keys", response_class=PlainTextResponse)
def get_user_keys(name: str, db: Session = Depends(get_db)):
    user = db.query(models.User).filter(models.User.name == name).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    keys = db.query(models.PublicKey).filter(models.PublicKey.user_name == name).order_by(models.PublicKey.id).all()
    return "".join(f"{k.key_line}\n" for k in keys)


@app.post("/groups")
def register_group(payload: GroupIn, db: Session = Depends(get_db)):
    existing = db.query(models.Group).filter(models.Group.name == payload.name).first()
    if existing:
        raise HTTPException(status_code=400, detail="Group already registered")
    db.add(models.Group(name=payload.name))
    for member in _unique_lines(payload.members):
        db.add(models.GroupMember(group_name=payload.name, user_name=member))
    db.commit()
    return {"status": "registered", "group": payload.name}


@app.get("/groups/{name}", response_model=GroupOut)
def get_group(name: str, db: Session = Depends(get_db)):
    group = db.query(models.Group).filter(models.Group.name == name).first()
    if not group:
        raise HTTPException(status_code=404, detail="Group not found")
    members = db.query(models.GroupMember).filter(models.GroupMember.group_name == name).all()
    return GroupOut(name=group.name, members=sorted(m.user_name for m in members))
