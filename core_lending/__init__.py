"""
Core Lending

Loan lifecycle and repayment engine for a retail-banking back office:
eligibility scoring, EMI amortization, approval and disbursement state
transitions, repayment schedules, foreclosure and default marking.
"""

__version__ = "1.0.0"
