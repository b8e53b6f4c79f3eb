from .users import User, SessionToken
from .tools import Tool, ToolRequest, ToolRequestUpvote
from .rentals import RentalTransaction

__all__ = [
    'User', 'SessionToken',
    'Tool', 'ToolRequest', 'ToolRequestUpvote',
    'RentalTransaction',
]
