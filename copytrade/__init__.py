"""Mirror a remote trading agent's position book onto a Binance USD-M account."""

__version__ = "0.3.0"
