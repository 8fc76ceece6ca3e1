"""
Execution layer — risk gating, order placement and position bookkeeping.

SRP split:
  portfolio_ledger.py    — PortfolioState transitions + per-symbol locks
  risk_evaluator.py      — signal validation, sizing, exposure/drawdown/RR gates
  order_router.py        — smart-order strategy selection
  order_executor.py      — strategy dispatch, retries, exchange registry
  simulated_exchange.py  — in-memory IExchangeClient
  trade_pipeline.py      — evaluate → execute → update, message mailbox
"""
