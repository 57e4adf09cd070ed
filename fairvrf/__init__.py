"""FairVRF hash-chain randomness oracle."""

__version__ = "0.1.0"
