"""Kuaforun multi-tenant barbershop booking backend."""
