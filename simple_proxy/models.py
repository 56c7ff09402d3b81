from pydantic import BaseModel


class ProxyErrorBody(BaseModel):
    error: str
    message: str
