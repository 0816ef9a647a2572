"""
Script para crear datos de prueba: empresa, restaurante, usuarios por rol y un repartidor
"""
from app.config.database import SessionLocal, create_tables
from app.shared.database.models import Company, Courier, Restaurant, User
from app.core.auth.service import AuthService

TEST_USERS = [
    {"email": "owner@pizzeria.com", "password": "owner123", "first_name": "Carlos", "last_name": "Dueño", "role": "owner"},
    {"email": "staff@pizzeria.com", "password": "staff123", "first_name": "Ana", "last_name": "Cocina", "role": "staff"},
    {"email": "repartidor@pizzeria.com", "password": "repartidor123", "first_name": "Lucía", "last_name": "Gómez", "role": "courier"},
    {"email": "cliente@pizzeria.com", "password": "cliente123", "first_name": "Luis", "last_name": "Cliente", "role": "customer"},
]

def create_test_users():
    """Crear empresa de prueba con un usuario por rol"""
    create_tables()
    db = SessionLocal()

    try:
        existing_users = db.query(User).count()
        if existing_users > 0:
            print(f"✅ Ya existen {existing_users} usuarios en la base de datos")
            return

        company = Company(name="Pizzería Demo", subdomain="pizzeria-demo", email="hola@pizzeria.com")
        db.add(company)
        db.flush()

        db.add(Restaurant(
            company_id=company.id,
            name="Pizzería Demo Centro",
            address="Calle Mayor 1, Madrid",
            latitude=40.4168,
            longitude=-3.7038
        ))

        for user_data in TEST_USERS:
            user = User(
                company_id=company.id,
                email=user_data["email"],
                password_hash=AuthService.get_password_hash(user_data["password"]),
                first_name=user_data["first_name"],
                last_name=user_data["last_name"],
                role=user_data["role"],
                is_active=True
            )
            db.add(user)
            db.flush()
            print(f"✅ Usuario creado: {user_data['email']} / {user_data['password']} ({user_data['role']})")

            if user.role == "courier":
                db.add(Courier(
                    company_id=company.id,
                    user_id=user.id,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    vehicle_type="scooter",
                    verification_status="verified"
                ))
                print("🛵 Perfil de repartidor verificado")

        db.commit()
        print(f"\n🎉 {len(TEST_USERS)} usuarios de prueba creados exitosamente!")

    except Exception as e:
        db.rollback()
        print(f"❌ Error creando usuarios: {e}")
        raise

    finally:
        db.close()

if __name__ == "__main__":
    create_test_users()
