from sqlalchemy import Column, Integer, String, Text, DateTime
from database import Base
from models.common import utcnow


class EncryptionKey(Base):
    __tablename__ = "encryption_keys"

    id = Column(Integer, primary_key=True, index=True)
    # data key wrapped by the master key, IV-prefixed and base64 encoded
    encrypted_key = Column(Text, nullable=False)
    iv = Column(String(32), nullable=False)
    created_at = Column(DateTime, default=utcnow)
