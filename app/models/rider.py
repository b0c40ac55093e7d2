from datetime import datetime

from app.extensions import db
from app.models.enums import RiderApproval, RiderStatus


class Rider(db.Model):
    __tablename__ = "riders"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    phone = db.Column(db.String(32), nullable=False, unique=True, index=True)

    approval_status = db.Column(db.String(16), nullable=False, default=RiderApproval.PENDING.value, index=True)
    status = db.Column(db.String(16), nullable=False, default=RiderStatus.OFFLINE.value, index=True)

    total_deliveries = db.Column(db.Integer, nullable=False, default=0)
    current_latitude = db.Column(db.Float, nullable=True)
    current_longitude = db.Column(db.Float, nullable=True)
    last_location_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_approved(self) -> bool:
        return (self.approval_status or "") == RiderApproval.APPROVED.value

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "name": self.name or "",
            "phone": self.phone or "",
            "approval_status": self.approval_status or RiderApproval.PENDING.value,
            "status": self.status or RiderStatus.OFFLINE.value,
            "total_deliveries": int(self.total_deliveries or 0),
            "current_latitude": self.current_latitude,
            "current_longitude": self.current_longitude,
            "last_location_at": self.last_location_at.isoformat() if self.last_location_at else None,
        }
