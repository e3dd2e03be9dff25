from .public_verifier import PublicVerifier

__all__ = ["PublicVerifier"]
