from storefront.models.category import Category
from storefront.models.product import Product

__all__ = ["Category", "Product"]
