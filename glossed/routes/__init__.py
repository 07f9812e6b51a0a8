"""Routes package for the booking application."""


def register_routes(app):
    """Register all route blueprints with the application."""
    from .requests import requests_bp
    from .offers import offers_bp
    from .payments import payments_bp
    from .notifications import notifications_bp
    
    app.register_blueprint(requests_bp, url_prefix='/api/requests')
    app.register_blueprint(offers_bp, url_prefix='/api/offers')
    app.register_blueprint(payments_bp, url_prefix='/api/payments')
    app.register_blueprint(notifications_bp, url_prefix='/api/notifications')
