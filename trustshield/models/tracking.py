"""
Raw tracking events consumed by the pattern detectors.

Rows are append-only and purged after the retention window.
"""

from sqlalchemy import Column, Integer, String, Float, DateTime, Boolean, Text

from trustshield.database import Base
from trustshield.utils.clock import utcnow


class DeviceTrackingEvent(Base):
    __tablename__ = "device_tracking"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    device_fingerprint = Column(String(128), nullable=False, index=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    action = Column(String(32), default="login")  # login, signup, review, ...
    created_at = Column(DateTime, default=utcnow, index=True)


class IpTrackingEvent(Base):
    __tablename__ = "ip_tracking"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    ip_address = Column(String(45), nullable=False, index=True)
    action = Column(String(32), default="login")
    created_at = Column(DateTime, default=utcnow, index=True)

    # Reputation metadata resolved at tracking time
    is_vpn = Column(Boolean, default=False)
    is_proxy = Column(Boolean, default=False)
    is_tor = Column(Boolean, default=False)
    is_datacenter = Column(Boolean, default=False)
    country = Column(String(2), nullable=True)


class LocationChange(Base):
    __tablename__ = "location_changes"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    old_latitude = Column(Float, nullable=True)
    old_longitude = Column(Float, nullable=True)
    new_latitude = Column(Float, nullable=False)
    new_longitude = Column(Float, nullable=False)
    changed_at = Column(DateTime, default=utcnow, index=True)
