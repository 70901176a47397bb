"""
Flash-loan cross-venue arbitrage engine: venues, fee model, evaluator,
atomic execution orchestrator and the opportunity monitor.
"""
