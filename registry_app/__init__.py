"""
Beneficiary registry application package.
"""
