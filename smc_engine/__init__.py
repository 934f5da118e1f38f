"""
SMC backtest and signal engine
"""
