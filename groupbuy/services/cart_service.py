from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from groupbuy.errors import NotFoundError, ValidationError
from groupbuy.models import CartItem, Product


class CartService:
    """Shopping cart rows that a group checkout copies from."""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    def add_to_cart(self, user_id: int, product_id: int, quantity: int = 1) -> CartItem:
        """Add quantity to the (user, product) row, creating it when absent."""
        if not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("Quantity must be a positive integer")
        product = self.db.query(Product).filter_by(id=product_id).first()
        if product is None or not product.is_active:
            raise NotFoundError(f"Product {product_id} not available")

        item = self.db.query(CartItem).filter_by(user_id=user_id, product_id=product_id).first()
        if item is None:
            item = CartItem(user_id=user_id, product_id=product_id, quantity=quantity)
            self.db.add(item)
        else:
            item.quantity += quantity
        self.db.commit()
        self.logger.info("Cart updated for user %s: product %s x%s", user_id, product_id, item.quantity)
        return item

    def set_quantity(self, user_id: int, product_id: int, quantity: int) -> Optional[CartItem]:
        if not isinstance(quantity, int) or quantity < 0:
            raise ValidationError("Quantity must be zero or a positive integer")
        item = self.db.query(CartItem).filter_by(user_id=user_id, product_id=product_id).first()
        if item is None:
            if quantity == 0:
                return None
            return self.add_to_cart(user_id, product_id, quantity)
        if quantity == 0:
            self.db.delete(item)
            self.db.commit()
            return None
        item.quantity = quantity
        self.db.commit()
        return item

    def list_cart(self, user_id: int, vendor_id: Optional[int] = None) -> List[CartItem]:
        query = self.db.query(CartItem).filter(CartItem.user_id == user_id)
        if vendor_id is not None:
            query = query.join(Product, CartItem.product_id == Product.id).filter(Product.vendor_id == vendor_id)
        return query.order_by(CartItem.id.asc()).all()
