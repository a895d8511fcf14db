import os
import uuid

import requests

base_url = os.getenv("API_URL", "http://localhost:8000").rstrip("/")
suffix = uuid.uuid4().hex[:8]

signup_payload = {
    "first_name": "Test",
    "last_name": "User",
    "email": f"test-{suffix}@example.com",
    "password": "secret123",
    "phone": f"+1555{suffix}",
}

product_payload = {
    "product_name": "Test Product",
    "price": 1000,
    "rating": 5,
    "image": "test.jpg",
}


def call(method, path, **kwargs):
    url = f"{base_url}{path}"
    print(f"{method} {url}")
    response = requests.request(method, url, timeout=10, **kwargs)
    print(f"Status Code: {response.status_code}")
    print(response.text)
    response.raise_for_status()
    return response.json()


if __name__ == "__main__":
    try:
        call("POST", "/users/signup", json=signup_payload)
        session = call(
            "POST",
            "/users/login",
            json={"email": signup_payload["email"], "password": signup_payload["password"]},
        )
        headers = {"token": session["token"]}
        user_id = session["InsertedID"]

        product = call("POST", "/admin/addproduct", json=product_payload, headers=headers)
        params = {"id": product["product_id"], "userID": user_id}
        call("GET", "/addtocart", params=params, headers=headers)
        call("GET", "/addtocart", params=params, headers=headers)
        call("GET", "/listcart", params={"id": user_id}, headers=headers)
        call("GET", "/cartcheckout", params={"id": user_id}, headers=headers)
        call("GET", "/listorders", params={"id": user_id}, headers=headers)
    except requests.RequestException as e:
        print(f"Error: {e}")
