"""Models package."""

from .user import User
from .audio_file import AudioFile
from .transcription import Transcription
from .summary import Summary
from .credit_purchase import CreditPurchase
