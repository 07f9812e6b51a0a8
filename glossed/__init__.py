from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_socketio import SocketIO
from flask_cors import CORS
import os
from dotenv import load_dotenv

load_dotenv()

db = SQLAlchemy()
socketio = SocketIO()

def create_app(config_name='development', config_overrides=None):
    app = Flask(__name__)
    
    # Config
    app.config['SQLALCHEMY_DATABASE_URI'] = os.getenv(
        'DATABASE_URL',
        'sqlite:///glossed.db'
    )
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['JWT_SECRET_KEY'] = os.getenv('JWT_SECRET_KEY', 'dev-secret')
    app.config['FRONTEND_URL'] = os.getenv('FRONTEND_URL', 'http://localhost:5173')
    app.config['NOTIFICATIONS_INLINE_DELIVERY'] = False
    
    if config_name == 'testing':
        app.config['TESTING'] = True
        app.config['NOTIFICATIONS_INLINE_DELIVERY'] = True
    
    if config_overrides:
        app.config.update(config_overrides)
    
    # Initialize extensions
    db.init_app(app)
    CORS(app)
    socketio.init_app(app, cors_allowed_origins='*')
    
    # Models must be imported before create_all and the change feed hooks
    from glossed import models  # noqa: F401
    from glossed.services.change_feed import install_change_feed
    install_change_feed()
    
    with app.app_context():
        try:
            db.create_all()
        except Exception as e:
            app.logger.warning(f"Could not create database tables: {e}")
    
    from glossed.services.notifications import notification_hub
    notification_hub.init_app(app)
    
    # Register routes
    from glossed.routes import register_routes
    register_routes(app)
    
    from glossed.socket_events import register_socket_events
    register_socket_events(socketio)
    
    # Health check
    @app.route('/health', methods=['GET'])
    def health():
        return {'status': 'ok'}, 200
    
    return app
