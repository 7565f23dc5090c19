from datetime import datetime
from sqlalchemy import (
    JSON, BigInteger, Boolean, Column, Date, DateTime, ForeignKey, Index, Integer, String, Text, func,
)
from sqlalchemy.orm import relationship
from appshelf.database import Base


class Application(Base):
    __tablename__ = "applications"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    developer = Column(String(255))
    publisher = Column(String(255))
    icon_url = Column(String(500))
    homepage = Column(String(500))
    tags = Column(JSON, default=list)
    has_multiple_os = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    releases = relationship(
        "Release", back_populates="application",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    extras = relationship(
        "Extra", back_populates="application",
        cascade="all, delete-orphan", passive_deletes=True,
    )

class Release(Base):
    __tablename__ = "versions"

    id = Column(Integer, primary_key=True, index=True)
    application_id = Column(Integer, ForeignKey("applications.id", ondelete="CASCADE"), nullable=False, index=True)
    version_number = Column(String(50), nullable=False)
    version_type = Column(String(20), nullable=False)  # installer / portable / source
    operating_system = Column(String(50))               # "Source Code" quand version_type == source
    architecture = Column(JSON, default=list)           # toujours une liste, éventuellement vide
    file_path = Column(String(1000), nullable=False)
    file_size = Column(BigInteger, default=0)
    release_date = Column(Date)
    uploaded_at = Column(DateTime, default=datetime.utcnow)
    notes = Column(Text)
    sort_order = Column(Integer, default=0, nullable=False)

    application = relationship("Application", back_populates="releases")


# Architecture is not part of the key
Index(
    "versions_unique_combo",
    Release.application_id,
    Release.version_number,
    func.coalesce(Release.operating_system, ""),
    Release.version_type,
    unique=True,
)

class DownloadLog(Base):
    __tablename__ = "download_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255))
    version_id = Column(Integer, ForeignKey("versions.id", ondelete="CASCADE"), index=True)
    downloaded_at = Column(DateTime, default=datetime.utcnow)

class Extra(Base):
    __tablename__ = "extras"

    id = Column(Integer, primary_key=True, index=True)
    application_id = Column(Integer, ForeignKey("applications.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    file_path = Column(String(1000), nullable=False)
    file_size = Column(BigInteger, default=0)
    uploaded_at = Column(DateTime, default=datetime.utcnow)

    application = relationship("Application", back_populates="extras")
