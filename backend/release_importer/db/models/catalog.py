"""Catalog entities written by the importer (artists, releases, tracks, requests)."""

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import relationship
from sqlalchemy.types import Date, DateTime

from release_importer.db.base import Base, JSONType

RELEASE_TYPES = ("single", "ep", "album")
PLATFORMS = (
    "youtube",
    "facebook",
    "tiktok",
    "flow",
    "international_streaming",
    "ringtunes",
)
REQUEST_PENDING = "pending"


class Artist(Base):
    __tablename__ = "artists"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    legal_name = Column(String(255))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("ix_artists_name_lower", func.lower(name), unique=True),)


class Release(Base):
    __tablename__ = "releases"

    id = Column(Integer, primary_key=True)
    title = Column(String(255), nullable=False)
    type = Column(String(16), nullable=False, default="single")
    artist_id = Column(Integer, ForeignKey("artists.id"), nullable=False, index=True)
    submission_id = Column(String(128), index=True)
    release_date = Column(Date)
    copyright_status = Column(String(32))
    video_type = Column(String(32))
    notes = Column(Text)
    payment_remarks = Column(Text)
    meta = Column("metadata", JSONType)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    artist = relationship("Artist")
    tracks = relationship(
        "Track", back_populates="release", order_by="Track.track_number"
    )
    platform_requests = relationship("PlatformRequest", back_populates="release")
    featured_artists = relationship("ReleaseArtist", back_populates="release")


class ReleaseArtist(Base):
    __tablename__ = "release_artists"

    id = Column(Integer, primary_key=True)
    release_id = Column(Integer, ForeignKey("releases.id"), nullable=False, index=True)
    artist_id = Column(Integer, ForeignKey("artists.id"), nullable=False)

    release = relationship("Release", back_populates="featured_artists")
    artist = relationship("Artist")


class Track(Base):
    __tablename__ = "tracks"

    id = Column(Integer, primary_key=True)
    release_id = Column(Integer, ForeignKey("releases.id"), nullable=False, index=True)
    track_number = Column(Integer, nullable=False)
    song_index = Column(Integer, nullable=False)
    name = Column(String(255))
    performer = Column(String(255))
    composer = Column(String(255))
    band = Column(String(255))
    producer = Column(String(255))
    studio = Column(String(255))
    label = Column(String(255))
    genre = Column(String(128))

    release = relationship("Release", back_populates="tracks")


class PlatformRequest(Base):
    __tablename__ = "platform_requests"

    id = Column(Integer, primary_key=True)
    release_id = Column(Integer, ForeignKey("releases.id"), nullable=False, index=True)
    platform = Column(String(32), nullable=False)
    channel = Column(String(255))
    requested = Column(Boolean, nullable=False, default=True)
    status = Column(String(16), nullable=False, default=REQUEST_PENDING)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    release = relationship("Release", back_populates="platform_requests")
