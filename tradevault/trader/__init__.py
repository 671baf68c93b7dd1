"""
Trade desk orchestration package.

The process entrypoint remains `main.py` at the repo root. The intake and
reconciliation loops, the trade book and the control surface live here.
"""
