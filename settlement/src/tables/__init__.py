from .base import Base, MinorUnits
from .user import User
from .card import Card
from .payment import Payment
from .execution import Execution
from .transfer import Transfer
from .settlement_attempt import SettlementAttempt
from .signer_nonce import SignerNonce
