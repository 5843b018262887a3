"""
Shared base for pipeline schemas.
"""

from pydantic import BaseModel, ConfigDict


class BaseSchema(BaseModel):
    """
    Base for assets, groups, drafts and credit accounts.

    - Strings are trimmed (titles and descriptions typed during review)
    - Assignments are validated, so group edits keep their constraints
    - Supabase rows and ORM-like objects validate via from_attributes
    """
    model_config = ConfigDict(
        from_attributes=True,
        str_strip_whitespace=True,
        validate_assignment=True
    )
