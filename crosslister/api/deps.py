from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from crosslister.db.session import get_db_session
from crosslister.services.native_publisher import NativePublisher, get_native_publisher

# Dependency for DB session
DbSession = Annotated[AsyncSession, Depends(get_db_session)]

Publisher = Annotated[NativePublisher, Depends(get_native_publisher)]
