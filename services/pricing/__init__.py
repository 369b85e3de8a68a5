from .defillama_client import DefiLlamaPricingClient, coin_id

__all__ = ["DefiLlamaPricingClient", "coin_id"]
