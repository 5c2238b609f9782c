"""Application layer: DTOs and the reservation lifecycle service"""
