from flask import Blueprint, request, jsonify
from sportconnect.models import Post

posts_bp = Blueprint('posts', __name__)

_FEED_LIMIT = 50


@posts_bp.route('', methods=['GET'])
def get_feed():
    """Recent feed posts, newest first, optionally for one user."""
    query = Post.query
    user_id = request.args.get('user_id', type=int)
    if user_id:
        query = query.filter(Post.user_id == user_id)
    limit = max(1, min(request.args.get('limit', _FEED_LIMIT, type=int), _FEED_LIMIT))
    posts = query.order_by(Post.created_at.desc(), Post.id.desc()).limit(limit).all()
    return jsonify({'posts': [post.to_dict() for post in posts]})
