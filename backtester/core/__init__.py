"""Domain values and money helpers shared by the backtest core."""
