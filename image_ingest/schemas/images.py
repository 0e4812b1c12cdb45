from pydantic import BaseModel


class ImageEnvelope(BaseModel):
    url: str = ""
    image: str = ""
