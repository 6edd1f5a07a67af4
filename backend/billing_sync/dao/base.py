"""
Base Data Access Object (DAO) class.

WHY: The DAO pattern keeps SQL out of the sync services, so the
reconciliation rules can be tested with a real (SQLite) session without
each service knowing how rows are queried.
"""

from typing import Generic, TypeVar, Type, Optional, Any, Dict
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.models.base import Base

# Type variable for model class
ModelType = TypeVar("ModelType", bound=Base)


class BaseDAO(Generic[ModelType]):
    """
    Base Data Access Object providing CRUD operations for all models.

    Type Parameters:
        ModelType: The SQLAlchemy model class this DAO manages
    """

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        """
        Initialize DAO with model class and database session.

        Args:
            model: The SQLAlchemy model class
            session: Async database session
        """
        self.model = model
        self.session = session

    async def create(self, **kwargs: Any) -> ModelType:
        """
        Create a new record.

        Args:
            **kwargs: Field values for the new record

        Returns:
            The created model instance with database-generated fields populated

        Raises:
            IntegrityError: If unique constraints are violated
        """
        instance = self.model(**kwargs)
        self.session.add(instance)
        await self.session.flush()
        await self.session.refresh(instance)
        return instance

    async def get_by_id(self, id: Any) -> Optional[ModelType]:
        """
        Retrieve a single record by primary key.

        Args:
            id: Primary key value (int for most tables, UUID string for profiles)

        Returns:
            The model instance if found, None otherwise
        """
        result = await self.session.execute(select(self.model).where(self.model.id == id))
        return result.scalar_one_or_none()

    async def get_by_field(self, field_name: str, value: Any) -> Optional[ModelType]:
        """
        Retrieve a single record by any field.

        Raises:
            AttributeError: If field_name doesn't exist on the model
        """
        if not hasattr(self.model, field_name):
            raise AttributeError(f"{self.model.__name__} has no field '{field_name}'")

        result = await self.session.execute(
            select(self.model).where(getattr(self.model, field_name) == value).limit(1)
        )
        return result.scalar_one_or_none()

    async def apply(self, instance: ModelType, fields: Dict[str, Any]) -> ModelType:
        """
        Set attributes on an already-loaded instance and flush.

        WHY: The sync services have the row in hand after comparing it with
        the provider; writing through the instance keeps the identity map
        consistent for the rest of the run.
        """
        for field, value in fields.items():
            setattr(instance, field, value)
        await self.session.flush()
        return instance

    async def count(self, **filters: Any) -> int:
        """
        Count records matching filters.
        """
        query = select(func.count()).select_from(self.model)

        for field, value in filters.items():
            if hasattr(self.model, field):
                query = query.where(getattr(self.model, field) == value)

        result = await self.session.execute(query)
        return int(result.scalar_one())

    async def exists(self, **filters: Any) -> bool:
        """
        Check if any records matching filters exist.
        """
        query = select(self.model.id)

        for field, value in filters.items():
            if hasattr(self.model, field):
                query = query.where(getattr(self.model, field) == value)

        query = query.limit(1)
        result = await self.session.execute(query)
        return result.first() is not None
