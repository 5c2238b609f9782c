"""Infrastructure layer: storage, locks and messaging adapters"""
