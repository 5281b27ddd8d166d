import uuid

def new_id() -> str:
    return str(uuid.uuid4())

def is_uuid(value) -> bool:
    try:
        uuid.UUID(str(value))
        return True
    except (ValueError, TypeError):
        return False
