from __future__ import annotations

from ..extensions import db
from optica.time_utils import to_utc_z


class Patient(db.Model):
    """
    Patient / client registry entry.

    Sales reference patients by id; the display names used on sales and
    pickup slips are derived here so every caller formats them the same way.
    """
    __tablename__ = "patients"
    __table_args__ = (
        db.UniqueConstraint("org_id", "dni", name="uq_patients_org_dni"),
        db.Index("ix_patients_org_name", "org_id", "last_name", "first_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)

    first_name = db.Column(db.String(120), nullable=False)
    last_name = db.Column(db.String(120), nullable=False)
    dni = db.Column(db.String(16), nullable=True)
    phone = db.Column(db.String(32), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    organization = db.relationship("Organization", backref=db.backref("patients", lazy=True))

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def pickup_name(self) -> str:
        # Pickup slips are filed by surname
        return f"{self.last_name} {self.first_name}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "full_name": self.full_name,
            "dni": self.dni,
            "phone": self.phone,
            "created_at": to_utc_z(self.created_at),
        }
