import unittest
import json

from base_test_case import ApiTestCase


class BannerTestCase(ApiTestCase):

    def test_001_banner_crud(self):
        headers = self._admin_headers()
        response = self.client.post('/api/admin/banners', headers=headers,
                                    json={'title': 'Timket Sale', 'image': 'https://cdn.example.com/timket.jpg'})
        self.assertEqual(response.status_code, 201)
        banner = json.loads(response.data.decode())['banner']
        self.assertTrue(banner['is_active'])

        response = self.client.put(f"/api/admin/banners/{banner['id']}", headers=headers, json={'link': '/sale'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(json.loads(response.data.decode())['banner']['link'], '/sale')

        data = json.loads(self.client.get('/api/admin/banners', headers=headers).data.decode())
        self.assertEqual(len(data), 1)

        response = self.client.delete(f"/api/admin/banners/{banner['id']}", headers=headers)
        self.assertEqual(response.status_code, 200)
        response = self.client.delete(f"/api/admin/banners/{banner['id']}", headers=headers)
        self.assertEqual(response.status_code, 404)
        self.assertEqual(json.loads(response.data.decode())['error'], 'Banner not found')

    def test_002_banner_validation(self):
        response = self.client.post('/api/admin/banners', headers=self._admin_headers(), json={'title': 'No image'})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(json.loads(response.data.decode())['error'], 'Title and image are required')

    def test_003_banner_admin_only(self):
        response = self.client.post('/api/admin/banners', headers=self._user_headers(),
                                    json={'title': 'X', 'image': 'x.jpg'})
        self.assertEqual(response.status_code, 403)

    def test_004_public_banners_are_active_only(self):
        headers = self._admin_headers()
        self.client.post('/api/admin/banners', headers=headers, json={'title': 'Live', 'image': 'live.jpg'})
        self.client.post('/api/admin/banners', headers=headers,
                         json={'title': 'Hidden', 'image': 'hidden.jpg', 'is_active': False})
        response = self.client.get('/api/banners')
        self.assertEqual(response.status_code, 200)
        self.assertEqual([b['title'] for b in json.loads(response.data.decode())], ['Live'])

    def test_005_wrong_typed_banner_fields(self):
        headers = self._admin_headers()
        response = self.client.post('/api/admin/banners', headers=headers, json={'title': 2024, 'image': 'x.jpg'})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(json.loads(response.data.decode())['error'], 'title must be a string')
        response = self.client.post('/api/admin/banners', headers=headers, json=['Timket Sale', 'x.jpg'])
        self.assertEqual(response.status_code, 400)
        self.assertEqual(json.loads(response.data.decode())['error'], 'Title and image are required')

        response = self.client.post('/api/admin/banners', headers=headers, json={'title': 'Live', 'image': 'live.jpg'})
        banner_id = json.loads(response.data.decode())['banner']['id']
        response = self.client.put(f'/api/admin/banners/{banner_id}', headers=headers, json={'link': {'href': '/sale'}})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(json.loads(response.data.decode())['error'], 'link must be a string')


class StaticPageTestCase(ApiTestCase):

    def test_001_page_crud_and_public_view(self):
        headers = self._admin_headers()
        response = self.client.post('/api/admin/pages', headers=headers,
                                    json={'title': 'About Us', 'slug': 'about-us', 'content': '<p>Hello</p>'})
        self.assertEqual(response.status_code, 201)
        page = json.loads(response.data.decode())['page']
        self.assertFalse(page['is_published'])

        response = self.client.get('/api/pages/about-us')
        self.assertEqual(response.status_code, 404)

        self.client.put(f"/api/admin/pages/{page['id']}", headers=headers, json={'is_published': True})
        response = self.client.get('/api/pages/about-us')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(json.loads(response.data.decode())['title'], 'About Us')

    def test_002_duplicate_slug(self):
        headers = self._admin_headers()
        page = {'title': 'Terms', 'slug': 'terms', 'content': 'Be nice'}
        self.client.post('/api/admin/pages', headers=headers, json=page)
        response = self.client.post('/api/admin/pages', headers=headers, json=page)
        self.assertEqual(response.status_code, 409)
        self.assertEqual(json.loads(response.data.decode())['error'], 'Page slug already exists')

    def test_003_invalid_slug(self):
        response = self.client.post('/api/admin/pages', headers=self._admin_headers(),
                                    json={'title': 'Bad', 'slug': 'Bad Slug!', 'content': 'x'})
        self.assertEqual(response.status_code, 400)


class EmailTemplateTestCase(ApiTestCase):

    def test_001_template_crud(self):
        headers = self._admin_headers()
        response = self.client.post('/api/admin/email-templates', headers=headers, json={
            'name': 'order_shipped', 'subject': 'Order #{{order_id}} shipped',
            'body': '<p>On its way</p>', 'variables': ['order_id'],
        })
        self.assertEqual(response.status_code, 201)
        template = json.loads(response.data.decode())['template']
        self.assertEqual(template['variables'], ['order_id'])

        response = self.client.put(f"/api/admin/email-templates/{template['id']}", headers=headers,
                                   json={'is_active': False})
        self.assertFalse(json.loads(response.data.decode())['template']['is_active'])

        data = json.loads(self.client.get('/api/admin/email-templates', headers=headers).data.decode())
        self.assertIn('password_reset', [t['name'] for t in data])

    def test_002_duplicate_template_name(self):
        response = self.client.post('/api/admin/email-templates', headers=self._admin_headers(),
                                    json={'name': 'password_reset', 'subject': 'S', 'body': 'B'})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(json.loads(response.data.decode())['error'], 'Template name already exists')

    def test_003_template_validation(self):
        headers = self._admin_headers()
        response = self.client.post('/api/admin/email-templates', headers=headers, json={'name': 'x', 'subject': 'S'})
        self.assertEqual(response.status_code, 400)
        response = self.client.post('/api/admin/email-templates', headers=headers,
                                    json={'name': 'x', 'subject': 'S', 'body': 'B', 'variables': 'name'})
        self.assertEqual(response.status_code, 400)
        response = self.client.put('/api/admin/email-templates/9999', headers=headers, json={'subject': 'S'})
        self.assertEqual(response.status_code, 404)
        self.assertEqual(json.loads(response.data.decode())['error'], 'Template not found')


if __name__ == '__main__':
    unittest.main()
