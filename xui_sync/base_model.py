from typing import Any, Dict, Iterable, List, Self

import pydantic


class BaseModel(pydantic.BaseModel):
    """Common base for the data transfer objects handed to callers.

    Records are loaded through SQLAlchemy; subclasses implement
    ``from_record`` to turn one row into a model.
    """

    model_config = pydantic.ConfigDict(populate_by_name=True)

    @classmethod
    def from_list(cls, args: List[Dict[str, Any]]) -> List[Self]:
        return [cls.model_validate(obj) for obj in args]

    @classmethod
    def from_record(cls, record: Any) -> Self:
        raise NotImplementedError

    @classmethod
    def from_records(cls, records: Iterable[Any]) -> List[Self]:
        return [cls.from_record(record) for record in records]
