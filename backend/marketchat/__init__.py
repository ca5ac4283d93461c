"""MarketChat: realtime buyer/seller messaging for the marketplace."""
