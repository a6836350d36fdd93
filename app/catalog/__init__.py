"""
Dataset catalog: listings, seller payout addresses and stored records.
"""
