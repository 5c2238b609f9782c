"""Domain layer: models, events, errors and the pure lifecycle rules"""
