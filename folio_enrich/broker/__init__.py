from folio_enrich.broker.trading212 import Trading212Client

__all__ = ["Trading212Client"]
