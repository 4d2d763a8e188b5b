from . import tickets, payments

__all__ = ["tickets", "payments"]
