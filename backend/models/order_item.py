# backend/models/order_item.py
from decimal import Decimal
from backend.extensions import db

class OrderItem(db.Model):
    __tablename__ = "checkout_order_item"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("checkout_order.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)

    # catalog reference (consumable / machine id from the catalog service)
    consumable_id = db.Column(db.String(64), nullable=True)
    name = db.Column(db.String(150), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    price = db.Column(db.Numeric(12, 2), nullable=False)
    specifications = db.Column(db.Text, nullable=True)

    @property
    def subtotal(self) -> Decimal:
        return Decimal(str(self.price)) * int(self.quantity)

    def to_dict(self) -> dict:
        return {
            "consumableId": self.consumable_id,
            "name": self.name,
            "quantity": self.quantity,
            "price": float(self.price),
            "subtotal": float(self.subtotal),
            "specifications": self.specifications,
        }
