"""Group discounts and shared checkout for group orders."""
