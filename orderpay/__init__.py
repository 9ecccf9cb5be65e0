"""
Orderpay - order and payment consistency service
"""
