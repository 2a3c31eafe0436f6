from .auditlog import AuditLog
from .banking import BankAccount, BankTransaction
from .client import Asset, Client, Contact
from .contract import Contract
from .currency import Currency
from .depreciation import AssetDepreciation, DepreciationUsage
from .entitymembership import Company, EntityMembership, User
from .expense import Expense
from .invoice import Invoice, InvoiceLine
from .payment import ClientCredit, CreditApplication, Payment, PaymentApplication
from .rate_card import RateCard
