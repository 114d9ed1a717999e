"""Reservation payment and deposit-authorization backend."""
