from app.models.user import User
from app.models.account import Account
from app.models.post import Post

__all__ = ["User", "Account", "Post"]
