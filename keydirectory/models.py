from sqlalchemy import Column, ForeignKey, Integer, String, Text, UniqueConstraint

from .db import Base


class User(Base):
    __tablename__ = "users"

    name = Column(String, primary_key=True)


class PublicKey(Base):
    __tablename__ = "public_keys"
    __table_args__ = (UniqueConstraint("user_name", "key_line"),)

    id = Column(Integer, primary_key=True, index=True)
    user_name = Column(String, ForeignKey("users.name"), index=True, nullable=False)
    key_line = Column(Text, nullable=False)  # one authorized_keys style line


class Group(Base):
    __tablename__ = "groups"

    name = Column(String, primary_key=True)


class GroupMember(Base):
    __tablename__ = "group_members"

    group_name = Column(String, ForeignKey("groups.name"), primary_key=True)
    user_name = Column(String, primary_key=True)
