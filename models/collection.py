from datetime import datetime

from extensions import db


class OwnedPrinting(db.Model):
    """How many copies of one printing a user owns.

    This is the single source of truth for ownership; "owns the card" is any
    row whose printing belongs to that card.
    """

    __tablename__ = "owned_printings"
    __table_args__ = (
        db.UniqueConstraint("user_id", "printing_id", name="uq_owned_printings_user_printing"),
        db.CheckConstraint("quantity > 0", name="owned_quantity_positive"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    printing_id = db.Column(
        db.Integer,
        db.ForeignKey("printings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    quantity = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = db.relationship("User", back_populates="owned_printings")
    printing = db.relationship("Printing")

    def __repr__(self):
        return f"<OwnedPrinting user={self.user_id} printing={self.printing_id} x{self.quantity}>"
