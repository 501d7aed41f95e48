"""
基础服务类
"""
from typing import TypeVar, Generic, Optional, Dict, Any
from dataclasses import dataclass
from abc import ABC

from sqlalchemy.ext.asyncio import AsyncSession

from cl_core.config import Settings
from cl_core.database import DatabaseManager, get_db_manager
from cl_core.utils.errors import CommerceException, InternalServerError
from cl_core.utils.logger import get_logger

T = TypeVar('T')


@dataclass
class ServiceResult(Generic[T]):
    """服务执行结果"""
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def ok(cls, data: T, metadata: Optional[Dict[str, Any]] = None) -> "ServiceResult[T]":
        """成功结果"""
        return cls(success=True, data=data, metadata=metadata)

    @classmethod
    def error(cls, error: str, error_code: Optional[str] = None) -> "ServiceResult[T]":
        """失败结果"""
        return cls(success=False, error=error, error_code=error_code)

    @classmethod
    def from_exception(cls, exc: CommerceException) -> "ServiceResult[T]":
        """由业务异常构造失败结果"""
        return cls(
            success=False,
            error=exc.detail or exc.title,
            error_code=exc.code,
            metadata={"status": exc.status}
        )


class BaseService(ABC):
    """基础服务类

    事务模式：
    - 自管理：未传入 session 时开启独立事务，正常返回提交，异常回滚
    - 参与者：传入调用方的 session，提交/回滚由调用方负责
    """

    def __init__(
        self,
        db_manager: Optional[DatabaseManager] = None,
        settings: Optional[Settings] = None
    ):
        self.db_manager = db_manager or get_db_manager()
        self.settings = settings or self.db_manager.settings
        self.logger = get_logger(self.__class__.__name__)

    async def execute_with_transaction(
        self,
        operation,
        *args,
        session: Optional[AsyncSession] = None,
        **kwargs
    ) -> Any:
        """在事务中执行操作"""
        if session is not None:
            return await operation(session, *args, **kwargs)

        try:
            async with self.db_manager.get_transaction() as tx_session:
                return await operation(tx_session, *args, **kwargs)
        except CommerceException:
            raise
        except Exception as e:
            self.logger.error("Transaction operation failed", operation=getattr(operation, "__name__", None), exc_info=True)
            raise InternalServerError(
                code="TRANSACTION_FAILED",
                detail="Database transaction failed"
            ) from e

    async def execute_with_session(
        self,
        operation,
        *args,
        **kwargs
    ) -> Any:
        """使用只读数据库会话执行操作"""
        try:
            async with self.db_manager.get_session() as session:
                return await operation(session, *args, **kwargs)
        except CommerceException:
            raise
        except Exception as e:
            self.logger.error("Session operation failed", operation=getattr(operation, "__name__", None), exc_info=True)
            raise InternalServerError(
                code="SESSION_OPERATION_FAILED",
                detail="Database operation failed"
            ) from e
