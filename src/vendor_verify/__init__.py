"""
Top-level package for the vendor_verify project.

Token issuance, presentation scoring and counterfeit reporting live under
`vendor_verify.token_verification`; the `vendor-verify` console script is
exposed from its CLI module.
"""

__all__: list[str] = []
