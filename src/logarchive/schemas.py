"""
Raw CDN log line schema.

Each line of a log object is one JSON document in the CDN's field naming.
Only the fields the resolver needs are validated; everything else is ignored.
"""

from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from core.errors.exceptions import ParseError


class RawLogLine(BaseModel):
    """Schema for one CDN access-log line.

    Example:
        >>> line = RawLogLine.parse_line(
        ...     '{"ClientRequestHost": "www.example.com",'
        ...     ' "ClientRequestPath": "/a.html", "ClientIP": "203.0.113.9"}'
        ... )
        >>> line.host
        'www.example.com'
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    host: str = Field(..., alias="ClientRequestHost", min_length=1)
    path: str = Field(..., alias="ClientRequestPath", min_length=1)
    client_ip: str = Field(..., alias="ClientIP", min_length=1)
    edge_start_timestamp: Optional[Union[int, str]] = Field(
        default=None, alias="EdgeStartTimestamp"
    )

    @classmethod
    def parse_line(cls, line: Union[str, bytes]) -> "RawLogLine":
        """Validate one raw line.

        Raises:
            ParseError: invalid JSON or a required field missing/empty
        """
        try:
            return cls.model_validate_json(line)
        except ValidationError as e:
            raise ParseError(
                f"Malformed log line: {e.error_count()} validation error(s)",
                cause=e,
            ) from e
